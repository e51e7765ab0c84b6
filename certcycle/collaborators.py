"""External tools used by certcycle.

Each tool is described by a small capability interface, so the renewal workflow
can be driven by the real commands in production and by fakes in the testsuite.

See ``certcycle.certcycle`` for the workflow itself.
"""

import configparser
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Protocol

import cryptography.x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

logger = logging.getLogger(f"certcycle.{__name__}")

# map of the short attribute names used in openssl -subj strings
SUBJECT_OIDS = {
    "C": NameOID.COUNTRY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "L": NameOID.LOCALITY_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "CN": NameOID.COMMON_NAME,
    "emailAddress": NameOID.EMAIL_ADDRESS,
}


class CryptoToolkit(Protocol):
    """Something which can turn a request config and a private key into a CSR."""

    def generate_signing_request(self, config: Path, subject: str, key: Path, output: Path) -> bool:
        """Write a DER CSR to ``output``, return True on success."""
        ...


class CertificateAuthorityClient(Protocol):
    """Something which can get a CSR signed by a CA."""

    def issue(self, csr: Path, output_dir: Path) -> bool:
        """Get a certificate for ``csr``, leaving the issued files in ``output_dir``."""
        ...


class ServiceManager(Protocol):
    """Something which can start, stop and reload a service."""

    def start(self, name: str) -> bool: ...

    def stop(self, name: str) -> bool: ...

    def reload(self, name: str) -> bool: ...

    def remediation(self, name: str) -> str:
        """Return the command an operator should run to recover the service manually."""
        ...


def run_command(command: list[str], cwd: Path | None = None) -> bool:
    """Run a command, wait for it, and log the output.

    stdout and stderr are logged at debug level when the command succeeds, and stderr
    is logged at error level when it fails.

    Args:
        command: The command and its arguments
        cwd(Path): The working directory for the command (optional)

    Returns:
        True if the exit code was 0, False otherwise
    """
    logger.debug(f"Running command: {command}")
    try:
        p = subprocess.Popen(  # noqa: S603
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
        )
    except OSError:
        logger.exception(f"Unable to run command {command}")
        return False

    stdout, stderr = p.communicate()
    logger.debug(
        f"Command returned exit code {p.returncode}, with {len(stdout)} bytes "
        f"stdout and {len(stderr)} bytes stderr output"
    )

    if p.returncode == 0:
        for line in (stdout + stderr).strip().decode("utf-8", errors="replace").split("\n"):
            if line:
                logger.debug(line)
        return True

    logger.error(f"Command {command[0]} returned non-zero exit code {p.returncode}")
    for line in stderr.strip().decode("utf-8", errors="replace").split("\n"):
        if line:
            logger.error(line)
    return False


class OpenSSLToolkit:
    """Build CSRs with the ``openssl req`` command."""

    def __init__(self, command: str = "openssl") -> None:
        self.command = command

    def get_command(self, config: Path, subject: str, key: Path, output: Path) -> list[str]:
        """Return the ``openssl req`` command to build a DER encoded CSR."""
        return [
            *shlex.split(self.command),
            "req",
            "-new",
            "-nodes",
            "-sha256",
            "-outform",
            "der",
            "-config",
            str(config),
            "-subj",
            subject,
            "-key",
            str(key),
            "-out",
            str(output),
        ]

    def generate_signing_request(self, config: Path, subject: str, key: Path, output: Path) -> bool:
        """Call openssl to create the CSR."""
        return run_command(self.get_command(config=config, subject=subject, key=key, output=output))


class CryptographyToolkit:
    """Build CSRs natively with the ``cryptography`` library.

    Reads the same request config document as ``openssl req`` would, but only
    looks at the DNS names in the ``[alt_names]`` section. Basic constraints and
    key usage are always set like the generated config does.
    """

    @staticmethod
    def parse_subject(subject: str) -> cryptography.x509.Name:
        """Parse an openssl style ``/C=DK/CN=example.com`` subject string.

        Args:
            subject: The subject string. ``/`` means an empty subject.

        Returns:
            The ``cryptography.x509.Name`` object

        Raises:
            ValueError: For malformed or unsupported subject components
        """
        attributes = []
        for component in subject.strip("/").split("/"):
            if not component:
                continue
            key, sep, value = component.partition("=")
            if not sep or key not in SUBJECT_OIDS:
                raise ValueError(f"Unsupported subject component: {component}")
            attributes.append(cryptography.x509.NameAttribute(SUBJECT_OIDS[key], value))
        return cryptography.x509.Name(attributes)

    @staticmethod
    def parse_alt_names(config: Path) -> list[str]:
        """Return the DNS names from the ``[alt_names]`` section of the request config, in order."""
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str  # type: ignore[assignment,method-assign]
        parser.read(config)
        if not parser.has_section("alt_names"):
            return []
        names = [
            (int(key.split(".", 1)[1]), value.strip())
            for key, value in parser.items("alt_names")
            if key.startswith("DNS.")
        ]
        return [value for _, value in sorted(names)]

    def generate_signing_request(self, config: Path, subject: str, key: Path, output: Path) -> bool:
        """Create the CSR and save it in DER format."""
        try:
            with key.open("rb") as f:
                keypair = serialization.load_pem_private_key(f.read(), password=None)
            names = self.parse_alt_names(config)
            if not names:
                logger.error(f"No DNS names found in the [alt_names] section of {config}")
                return False
            csr = (
                cryptography.x509.CertificateSigningRequestBuilder()
                .subject_name(self.parse_subject(subject))
                .add_extension(cryptography.x509.BasicConstraints(ca=False, path_length=None), critical=False)
                .add_extension(
                    cryptography.x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=True,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=False,
                )
                .add_extension(
                    cryptography.x509.SubjectAlternativeName([cryptography.x509.DNSName(name) for name in names]),
                    critical=False,
                )
                .sign(keypair, hashes.SHA256())  # type: ignore[arg-type]
            )
            with output.open("wb") as f:
                f.write(csr.public_bytes(serialization.Encoding.DER))
        except (OSError, ValueError, TypeError, configparser.Error):
            logger.exception("Unable to build the CSR")
            return False

        logger.debug(f"Wrote CSR for {names} to {output}")
        return True


class CertbotClient:
    """Get certificates by running certbot (or the older letsencrypt-auto) in standalone mode."""

    def __init__(  # noqa: PLR0913
        self,
        command: str = "certbot",
        acme_email: str | None = None,
        acme_server_url: str | None = None,
        config_dir: Path | None = None,
        work_dir: Path | None = None,
        logs_dir: Path | None = None,
    ) -> None:
        self.command = command
        self.acme_email = acme_email
        self.acme_server_url = acme_server_url
        self.config_dir = config_dir
        self.work_dir = work_dir
        self.logs_dir = logs_dir

    def get_command(self, csr: Path) -> list[str]:
        """Put the certbot command together.

        Start with ``self.command`` and append the standalone options,
        then the optional account and directory settings.

        Args:
            csr(Path): The path to the CSR

        Returns:
            The certbot command as a list
        """
        command: list[str] = [
            *shlex.split(self.command),
            "certonly",
            "--non-interactive",
            "--standalone",
            "--csr",
            str(csr),
        ]

        if self.acme_email:
            command += ["--email", self.acme_email, "--agree-tos"]

        if self.acme_server_url:
            command += ["--server", self.acme_server_url]

        if self.config_dir:
            command += ["--config-dir", str(self.config_dir)]

        if self.work_dir:
            command += ["--work-dir", str(self.work_dir)]

        if self.logs_dir:
            command += ["--logs-dir", str(self.logs_dir)]

        logger.debug(f"Returning certbot command: {command}")
        return command

    def issue(self, csr: Path, output_dir: Path) -> bool:
        """Run certbot with ``output_dir`` as working directory, certbot writes the issued files there."""
        return run_command(self.get_command(csr), cwd=output_dir)


class ServiceCommandManager:
    """Control a service with ``service NAME ACTION`` or ``systemctl ACTION NAME``."""

    def __init__(self, command: str = "service") -> None:
        self.command = command

    def get_command(self, name: str, action: str) -> list[str]:
        """Return the service manager command for the action, in the argument order the manager expects."""
        command = shlex.split(self.command)
        if Path(command[0]).name == "systemctl":
            return [*command, action, name]
        return [*command, name, action]

    def start(self, name: str) -> bool:
        return run_command(self.get_command(name, "start"))

    def stop(self, name: str) -> bool:
        return run_command(self.get_command(name, "stop"))

    def reload(self, name: str) -> bool:
        return run_command(self.get_command(name, "reload"))

    def remediation(self, name: str) -> str:
        return shlex.join(self.get_command(name, "restart"))
