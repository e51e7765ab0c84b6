#!/usr/bin/env python
"""Certcycle module.

Renews the certificate of a web server with a CA client in standalone mode,
stopping the web server while the CA client needs the port, and deploys the new
certificate and chain files with a backup of the previous ones.

Suitable to be run from cron or a systemd timer.
"""

import argparse
import logging
import logging.handlers
import os
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import types
from collections.abc import Iterator
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Literal, NoReturn

import cryptography.x509
import pydantic
import yaml
from cryptography.hazmat.primitives import serialization
from pid import PidFile  # type: ignore[import-not-found]
from pydantic_settings import BaseSettings, SettingsConfigDict

from certcycle.collaborators import (
    CertbotClient,
    CertificateAuthorityClient,
    CryptographyToolkit,
    CryptoToolkit,
    OpenSSLToolkit,
    ServiceCommandManager,
    ServiceManager,
)

logger = logging.getLogger(f"certcycle.{__name__}")

__version__: str
try:
    __version__ = version("certcycle")
except PackageNotFoundError:
    __version__ = "0.0.0"

STAGING_URL = "https://acme-staging-v02.api.letsencrypt.org/directory"


class CertcycleError(Exception):
    """Base class for all errors which abort a certcycle run."""

    exitcode = 1


class InvocationError(CertcycleError):
    """Invalid command-line arguments or configuration."""

    exitcode = 1


class PreflightError(CertcycleError):
    """A required program or file is missing or unusable."""

    exitcode = 2


class RequestError(CertcycleError):
    """The CSR could not be built."""

    exitcode = 3


class ServiceStopError(CertcycleError):
    exitcode = 3


class ServiceStartError(CertcycleError):
    exitcode = 3


class IssuanceError(CertcycleError):
    """The CA client failed."""

    exitcode = 4


class ArtifactError(CertcycleError):
    """The issued files are missing or not what we asked for."""

    exitcode = 4


class InstallError(CertcycleError):
    """Backing up or replacing an installed file failed."""

    exitcode = 4


class ServiceReloadError(CertcycleError):
    exitcode = 5


class Config(BaseSettings):
    """The Certcycle settings class.

    Defines default settings, supports env overrides. Frozen, so the configuration
    cannot change during a run.
    """

    model_config = SettingsConfigDict(env_prefix="certcycle_", frozen=True)

    acme_email: str | None = None
    acme_server_url: str | None = None
    backup_suffix: str = "-bak"
    ca_client_command: str = "certbot"
    cert_file: Path = Path("/etc/ssl/private/cert.pem")
    cert_subject: str = "/"
    certbot_config_dir: Path | None = None
    certbot_logs_dir: Path | None = None
    certbot_work_dir: Path | None = None
    chain_file: Path = Path("/etc/ssl/private/chain.pem")
    chain_mode: Literal["intermediate", "root-intermediate", "fullchain"] = "intermediate"
    config_file: Path | None = None
    domain_list: list[str] = []
    issued_cert_filename: str = "0000_cert.pem"
    issued_chain_filename: str = "0000_chain.pem"
    key_file: Path = Path("/etc/ssl/private/key.pem")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    openssl_command: str = "openssl"
    post_renew_hooks: list[str] = []
    request_backend: Literal["openssl", "cryptography"] = "openssl"
    root_ca_file: Path = Path("/etc/ssl/certs/ISRG_Root_X1.pem")
    service_command: str = "service"
    service_name: str = "apache2"
    syslog_facility: str | None = None
    syslog_socket: str | None = None
    temp_dir: Path | None = None

    @pydantic.field_validator("domain_list")
    @classmethod
    def idna_encode_domains(cls, domains: list[str]) -> list[str]:
        """IDNA encode the names, refusing names which cannot be encoded."""
        encoded = []
        for domain in domains:
            try:
                name = domain.encode("idna").decode("ascii")
            except UnicodeError as e:
                raise ValueError(f"Invalid DNS name '{domain}' in domain-list: {e}") from e
            if not name:
                raise ValueError("Empty DNS name in domain-list")
            encoded.append(name)
        return encoded


def readable_file(path: Path) -> bool:
    """Return True if path is a regular file we can read."""
    return path.is_file() and os.access(path, os.R_OK)


def executable_file(path: Path) -> bool:
    """Return True if path is a regular file we can execute."""
    return path.is_file() and os.access(path, os.X_OK)


def find_executable(command: str) -> Path | None:
    """Return the path of the binary of a command line, looking it up in PATH if needed.

    Args:
        command: The command line, the first word is the binary

    Returns:
        The path to the binary, or None if it cannot be found
    """
    words = shlex.split(command)
    if not words:
        return None
    binary = words[0]
    if os.sep in binary:
        return Path(binary)
    found = shutil.which(binary)
    return Path(found) if found else None


class Workspace:
    """A private temporary directory for the files of one run.

    Use as a context manager, the directory is removed when the block is left,
    no matter how it is left. Failure to remove it is only a warning.
    """

    def __init__(self, parent: Path | None = None) -> None:
        self.parent = parent
        self.path: Path | None = None
        self.removed = False

    def create(self) -> Path:
        """Create the directory (mode 0700) and return the path."""
        try:
            self.path = Path(tempfile.mkdtemp(prefix="certcycle-", dir=self.parent))
        except OSError as e:
            msg = f"Cannot create temporary directory: {e}"
            logger.error(msg)
            raise PreflightError(msg) from e
        logger.debug(f"Created workspace {self.path}")
        return self.path

    def cleanup(self) -> None:
        """Remove the directory and everything in it, only the first time we are called."""
        if self.path is None or self.removed:
            return
        self.removed = True
        try:
            shutil.rmtree(self.path)
        except OSError:
            logger.warning(
                f"Cannot remove temporary directory '{self.path}'. You should check it for private data."
            )
            return
        logger.debug(f"Removed workspace {self.path}")

    def __enter__(self) -> Path:
        return self.create()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: types.TracebackType | None,
    ) -> None:
        self.cleanup()


class Certcycle:
    """The Certcycle renewal class."""

    # save version as a class attribute
    __version__ = __version__

    def __init__(
        self,
        userconfig: dict[str, object] | None = None,
        toolkit: CryptoToolkit | None = None,
        ca_client: CertificateAuthorityClient | None = None,
        service_manager: ServiceManager | None = None,
    ) -> None:
        """Merge userconfig with defaults, configure logging and the external tools.

        Args:
            userconfig: A dict of configuration to merge with default config
            toolkit: The crypto toolkit to use instead of the configured one (optional)
            ca_client: The CA client to use instead of certbot (optional)
            service_manager: The service manager to use instead of the configured one (optional)

        Returns:
            None
        """
        if userconfig is None:
            userconfig = {}
        # convert dashes to underscores in config keys
        userconfig = {key.replace("-", "_"): value for key, value in userconfig.items()}
        try:
            self.conf = Config(**userconfig)  # type: ignore[arg-type]
        except pydantic.ValidationError as e:
            msg = f"Invalid configuration: {e}"
            logger.error(msg)
            raise InvocationError(msg) from e

        # define the log format used for stdout depending on the requested loglevel
        if self.conf.log_level == "DEBUG":
            console_logformat = (
                "%(asctime)s certcycle %(levelname)s Certcycle.%(funcName)s():%(lineno)i:  %(message)s"
            )
        else:
            console_logformat = "%(asctime)s certcycle %(levelname)s %(message)s"

        # configure the log format used for console
        logging.basicConfig(
            level=getattr(logging, self.conf.log_level),
            format=console_logformat,
            datefmt="%Y-%m-%d %H:%M:%S %z",
        )

        # connect to syslog?
        if self.conf.syslog_socket and self.conf.syslog_facility:
            facility: int = getattr(logging.handlers.SysLogHandler, self.conf.syslog_facility)
            syslog_handler = logging.handlers.SysLogHandler(address=self.conf.syslog_socket, facility=facility)
            syslog_format = logging.Formatter("certcycle: %(message)s")
            syslog_handler.setFormatter(syslog_format)
            logger.addHandler(syslog_handler)
            # usually SysLogHandler is lazy and doesn't connect the socket until
            # a message has to be sent. Call _connect_unixsocket() now to force
            # an exception now if we can't connect to the socket
            syslog_handler._connect_unixsocket(  # type: ignore[attr-defined]  # noqa: SLF001
                self.conf.syslog_socket
            )
            logger.debug(
                f"Connected to syslog-socket {self.conf.syslog_socket}, logging to facility {self.conf.syslog_facility}"
            )
        else:
            logger.debug("Not configuring syslog")

        # the external tools
        if toolkit is not None:
            self.toolkit = toolkit
        elif self.conf.request_backend == "cryptography":
            self.toolkit = CryptographyToolkit()
        else:
            self.toolkit = OpenSSLToolkit(command=self.conf.openssl_command)

        self.ca_client = ca_client or CertbotClient(
            command=self.conf.ca_client_command,
            acme_email=self.conf.acme_email,
            acme_server_url=self.conf.acme_server_url,
            config_dir=self.conf.certbot_config_dir,
            work_dir=self.conf.certbot_work_dir,
            logs_dir=self.conf.certbot_logs_dir,
        )
        self.service_manager = service_manager or ServiceCommandManager(command=self.conf.service_command)

        logger.debug(f"certcycle {__version__} configured, log-level is {self.conf.log_level}")
        logger.debug(f"Running with config: {self.conf}")

    @property
    def domains(self) -> list[str]:
        """The configured names, IDNA encoded."""
        return list(self.conf.domain_list)

    # PREFLIGHT METHODS

    def preflight(self) -> None:
        """Make sure the programs and files we need are there before we change anything.

        Raises:
            PreflightError: If something is missing or unusable
        """
        if not self.conf.domain_list:
            self.preflight_failed("No domain-list configured, at least one DNS name is needed for the certificate.")

        ca_client = find_executable(self.conf.ca_client_command)
        if ca_client is None or not executable_file(ca_client):
            self.preflight_failed(f"CA client tool '{self.conf.ca_client_command}' isn't an executable file.")

        if not readable_file(self.conf.key_file):
            self.preflight_failed(f"Private key '{self.conf.key_file}' isn't a readable file.")

        if not readable_file(self.conf.root_ca_file):
            self.preflight_failed(f"The root CA certificate '{self.conf.root_ca_file}' isn't a readable file.")

        if self.conf.request_backend == "openssl":
            openssl = find_executable(self.conf.openssl_command)
            if openssl is None or not executable_file(openssl):
                self.preflight_failed(f"Crypto toolkit '{self.conf.openssl_command}' isn't an executable file.")

        logger.debug("Preflight checks OK")

    @staticmethod
    def preflight_failed(msg: str) -> NoReturn:
        logger.error(msg)
        raise PreflightError(msg)

    # CSR METHODS

    def build_request_config(self) -> str:
        """Return the request config document for ``openssl req``.

        The ``[alt_names]`` section lists the configured names in order.

        Returns:
            The config as a string
        """
        lines = [
            "[req]",
            "distinguished_name = req_distinguished_name",
            "req_extensions = v3_req",
            "",
            "[req_distinguished_name]",
            "[ v3_req ]",
            "",
            "basicConstraints = CA:FALSE",
            "keyUsage = nonRepudiation, digitalSignature, keyEncipherment",
            "subjectAltName = @alt_names",
            "",
            "[alt_names]",
        ]
        lines += [f"DNS.{number} = {domain}" for number, domain in enumerate(self.domains, start=1)]
        return "\n".join(lines) + "\n"

    def build_request(self, workdir: Path) -> Path:
        """Write the request config to the workspace and build the CSR.

        Args:
            workdir(Path): The workspace

        Returns:
            The path to the DER encoded CSR

        Raises:
            RequestError: If the crypto toolkit fails
        """
        configpath = workdir / "openssl.cnf"
        csrpath = workdir / "request.csr"
        with configpath.open("w") as f:
            f.write(self.build_request_config())
        logger.debug(f"Wrote request config for {self.domains} to {configpath}")

        if not self.toolkit.generate_signing_request(
            config=configpath,
            subject=self.conf.cert_subject,
            key=self.conf.key_file,
            output=csrpath,
        ):
            msg = "Cannot create the certificate signing request."
            logger.error(msg)
            raise RequestError(msg)

        logger.info(f"Created certificate signing request for {self.domains}")
        return csrpath

    # SERVICE METHODS

    def service_failed(self, action: str, error: type[CertcycleError]) -> NoReturn:
        """Log the failure with a hint about how to fix it, and raise ``error``."""
        msg = f"There was an error while {action} the service {self.conf.service_name}."
        logger.error(msg)
        logger.error(
            f"You must probably fix it with: '{self.service_manager.remediation(self.conf.service_name)}' "
            "command or something."
        )
        raise error(msg)

    def start_service(self) -> None:
        logger.info(f"Starting service {self.conf.service_name} ...")
        if not self.service_manager.start(self.conf.service_name):
            self.service_failed("starting", ServiceStartError)

    def stop_service(self) -> None:
        logger.info(f"Stopping service {self.conf.service_name} to free the port for the CA client ...")
        if not self.service_manager.stop(self.conf.service_name):
            self.service_failed("stopping", ServiceStopError)

    def reload_service(self) -> None:
        logger.info(f"Reloading service {self.conf.service_name} to load the new certificate ...")
        if not self.service_manager.reload(self.conf.service_name):
            self.service_failed("reloading", ServiceReloadError)

    @contextmanager
    def service_stopped(self) -> Iterator[None]:
        """Stop the service, and start it again however the block is left.

        If the block raised and starting fails too, the ServiceStartError is raised
        with the original exception as context.
        """
        self.stop_service()
        try:
            yield
        except BaseException:
            logger.warning(f"Starting service {self.conf.service_name} again with the old certificate")
            raise
        finally:
            self.start_service()

    # ISSUANCE METHODS

    def issue_certificate(self, csrpath: Path, workdir: Path) -> None:
        """Ask the CA client for a certificate, the issued files end up in the workspace.

        The service must be stopped so the CA client can use the port.

        Args:
            csrpath(Path): The path to the CSR
            workdir(Path): The workspace, used as working directory for the CA client

        Raises:
            IssuanceError: If the CA client fails
        """
        logger.info(f"Getting a new certificate with '{self.conf.ca_client_command}' ...")
        if not self.ca_client.issue(csr=csrpath, output_dir=workdir):
            msg = f"The certificate cannot be obtained with '{self.conf.ca_client_command}' tool."
            logger.error(msg)
            raise IssuanceError(msg)
        logger.info("The CA client reports success")

    # CERTIFICATE METHODS

    @staticmethod
    def split_pem_chain(pem_chain_bytes: bytes) -> list[bytes]:
        """Split a PEM chain into a list of bytes of the individual PEM certificates.

        Args:
            pem_chain_bytes: The bytes representing the PEM chain

        Returns:
            A list of 0 or more bytes chunks representing each certificate
        """
        logger.debug(f"Parsing certificates from {len(pem_chain_bytes)} bytes input")
        marker = b"-----BEGIN CERTIFICATE-----"
        certificates = [marker + cert for cert in pem_chain_bytes.split(marker)[1:]]
        logger.debug(f"Returning a list of {len(certificates)} chunks of bytes resembling PEM certificates")
        return certificates

    @staticmethod
    def parse_certificate(certificate_bytes: bytes) -> cryptography.x509.Certificate | None:
        """Parse a bunch of bytes representing a PEM certificate and return.

        Args:
            certificate_bytes: The PEM certificate

        Returns:
            The parsed cryptography.x509.Certificate object or None
        """
        try:
            return cryptography.x509.load_pem_x509_certificate(certificate_bytes)
        except ValueError:
            logger.error("Unable to parse, this is not a valid PEM formatted certificate.")  # noqa: TRY400
            logger.debug(certificate_bytes)
            return None

    def load_certificates(self, path: Path) -> list[cryptography.x509.Certificate]:
        """Read PEM certificate(s) from the path, return them in a list.

        Returns an empty list if the file has no certificates or one of them cannot be parsed.
        """
        with path.open("rb") as f:
            pem_bytes = f.read()
        certificates = []
        for certbytes in self.split_pem_chain(pem_bytes):
            certificate = self.parse_certificate(certbytes)
            if not certificate:
                return []
            certificates.append(certificate)
        return certificates

    @staticmethod
    def check_certificate_public_key(certificate: cryptography.x509.Certificate, keypath: Path) -> bool:
        """Make sure the certificate is for the public key of the private key in keypath."""
        with keypath.open("rb") as f:
            keypair = serialization.load_pem_private_key(f.read(), password=None)
        return bool(
            keypair.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            == certificate.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )

    @staticmethod
    def check_certificate_san_names(certificate: cryptography.x509.Certificate, san_names: list[str]) -> bool:
        """Make sure the certificate has the provided list of names as SAN.

        Args:
            certificate: The certificate to check
            san_names: A list of the names to expect, IDNA encoded

        Returns:
            True if all san_names were found in the cert, and no others.
        """
        try:
            cert_san = certificate.extensions.get_extension_for_oid(
                cryptography.x509.ExtensionOID.SUBJECT_ALTERNATIVE_NAME
            ).value
        except cryptography.x509.ExtensionNotFound:
            return False
        assert isinstance(cert_san, cryptography.x509.SubjectAlternativeName)
        cert_san_names = cert_san.get_values_for_type(cryptography.x509.DNSName)
        # if there is a difference between the sets we want to return False
        return not bool(set(cert_san_names).symmetric_difference(san_names))

    def check_issued_artifacts(self, workdir: Path) -> tuple[Path, Path]:
        """Find and check the certificate and intermediate the CA client left in the workspace.

        The CA client filenames are configured, and have changed between versions, so the
        files are checked rather than trusted.

        Args:
            workdir(Path): The workspace

        Returns:
            A tuple of the paths to the certificate and the intermediate

        Raises:
            ArtifactError: If a file is missing, is not a certificate, or the certificate
                is not for our key and names
        """
        certpath = workdir / self.conf.issued_cert_filename
        intermediatepath = workdir / self.conf.issued_chain_filename

        for path, description in ((certpath, "certificate"), (intermediatepath, "intermediate CA")):
            if not readable_file(path):
                self.artifact_failed(
                    f"The issued {description} file '{path}' isn't a readable file. "
                    "Maybe it was created with different name?"
                )
            if not self.load_certificates(path):
                self.artifact_failed(f"The issued {description} file '{path}' does not contain a PEM certificate.")

        certificate = self.load_certificates(certpath)[0]
        try:
            key_matches = self.check_certificate_public_key(certificate, self.conf.key_file)
        except (OSError, ValueError, TypeError):
            logger.exception(f"Unable to load private key {self.conf.key_file}")
            key_matches = False
        if not key_matches:
            self.artifact_failed(
                f"The issued certificate '{certpath}' is not for the private key {self.conf.key_file}."
            )

        if not self.check_certificate_san_names(certificate, self.domains):
            self.artifact_failed(
                f"The issued certificate '{certpath}' SAN name list is different from the expected: {self.domains}"
            )

        logger.info(f"Issued certificate {certificate.serial_number} for {self.domains} looks OK")
        return certpath, intermediatepath

    @staticmethod
    def artifact_failed(msg: str) -> NoReturn:
        logger.error(msg)
        raise ArtifactError(msg)

    # INSTALL METHODS

    @staticmethod
    def save_certificates(certificates: list[cryptography.x509.Certificate], path: Path) -> None:
        """Save the certificates to the path in PEM format, in order."""
        with path.open("wb") as f:
            for certificate in certificates:
                f.write(certificate.public_bytes(serialization.Encoding.PEM))

    def build_chain(self, certpath: Path, intermediatepath: Path, workdir: Path) -> Path:
        """Create the chain file for the web server according to ``chain-mode``.

        - ``intermediate``: a copy of the intermediate file
        - ``root-intermediate``: root CA followed by the intermediate
        - ``fullchain``: certificate followed by the intermediate

        Args:
            certpath(Path): The issued certificate
            intermediatepath(Path): The issued intermediate
            workdir(Path): The workspace

        Returns:
            The path to the chain file in the workspace

        Raises:
            InstallError: If the chain file cannot be written
        """
        chainpath = workdir / "certcycle-chain.pem"
        try:
            if self.conf.chain_mode == "root-intermediate":
                root = self.load_certificates(self.conf.root_ca_file)
                if not root:
                    msg = f"The root CA file '{self.conf.root_ca_file}' does not contain a PEM certificate."
                    logger.error(msg)
                    raise InstallError(msg)
                self.save_certificates(root + self.load_certificates(intermediatepath), chainpath)
            elif self.conf.chain_mode == "fullchain":
                self.save_certificates(
                    self.load_certificates(certpath) + self.load_certificates(intermediatepath), chainpath
                )
            else:
                shutil.copyfile(intermediatepath, chainpath)
        except OSError as e:
            msg = f"Cannot create the chain file '{chainpath}': {e}"
            logger.error(msg)
            raise InstallError(msg) from e
        logger.debug(f"Created {self.conf.chain_mode} chain file {chainpath}")
        return chainpath

    def install_file(self, new: Path, canonical: Path, description: str) -> None:
        """Move the installed file to its backup name, then move the new file into place.

        The backup is made with a single rename, replacing the previous backup. The new file
        is renamed into place when on the same filesystem, copied otherwise.

        Args:
            new(Path): The new file
            canonical(Path): The path the web server reads
            description: What the file is, for log messages

        Raises:
            InstallError: If either move fails
        """
        backup = canonical.with_name(canonical.name + self.conf.backup_suffix)
        try:
            os.replace(canonical, backup)
        except OSError as e:
            msg = f"Cannot backup (move) the old {description} '{canonical}': {e}"
            logger.error(msg)
            raise InstallError(msg) from e
        logger.debug(f"Moved old {description} '{canonical}' to '{backup}'")

        try:
            shutil.move(new, canonical)
            os.chmod(canonical, 0o644)
        except OSError as e:
            msg = f"Cannot move new {description} to a file '{canonical}': {e}"
            logger.error(msg)
            logger.error(f"The previous {description} is in '{backup}'")
            raise InstallError(msg) from e
        logger.info(f"Installed new {description} '{canonical}'")

    def install(self, certpath: Path, chainpath: Path) -> None:
        """Install certificate and chain, reload the service and run post renew hooks."""
        self.install_file(certpath, self.conf.cert_file, "certificate")
        self.install_file(chainpath, self.conf.chain_file, "certificate chain")
        self.reload_service()
        self.run_post_renew_hooks()

    # POST RENEW HOOK METHODS

    def run_post_renew_hooks(self) -> None:
        """Run the configured post renew hooks, failures are logged and ignored."""
        if not self.conf.post_renew_hooks:
            logger.debug("No post-renew-hooks found in config")
            return
        for hook in self.conf.post_renew_hooks:
            self.run_post_renew_hook(shlex.split(hook))

    @staticmethod
    def run_post_renew_hook(hook: list[str]) -> bool:
        """Run a specific post renew hook.

        Args:
            hook: A list of string components of the command and arguments

        Returns: True if exit code was 0, False otherwise.
        """
        logger.info(f"Running post renew hook: {hook}")
        try:
            p = subprocess.Popen(hook)  # noqa: S603
        except OSError:
            logger.exception(f"Unable to run post renew hook {hook}")
            return False
        exitcode = p.wait()
        if exitcode != 0:
            logger.error(f"Got exit code {exitcode} when running post renew hook {hook}")
            return False
        logger.info(f"Post renew hook {hook} ended with exit code 0, good.")
        return True

    # MAIN WORKFLOW

    def renew(self) -> None:
        """Renew and deploy the certificate.

        Preflight checks, CSR, stop the service, get the certificate, start the service,
        check and install the new files, reload the service. The workspace is removed
        whatever happens.

        Raises:
            CertcycleError: A subclass describing the first thing that went wrong
        """
        logger.info(f"certcycle {__version__} renewing certificate for {self.domains}")
        self.preflight()
        with Workspace(self.conf.temp_dir) as workdir:
            csrpath = self.build_request(workdir)
            with self.service_stopped():
                self.issue_certificate(csrpath, workdir)
            certpath, intermediatepath = self.check_issued_artifacts(workdir)
            chainpath = self.build_chain(certpath, intermediatepath, workdir)
            self.install(certpath, chainpath)
        logger.info("All done, certcycle exiting cleanly.")


class ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser which exits with code 1 on invalid arguments."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def get_parser() -> argparse.ArgumentParser:
    """Create and return the argparse object."""
    parser = ArgumentParser(
        description=f"certcycle version {__version__}. Renews and deploys the web server certificate, "
        "stopping the web server while the CA client runs in standalone mode. Run without arguments "
        "to renew. Exit codes: 0 success, 1 invalid arguments, 2 missing dependency, 3 CSR or "
        "service stop/start failure, 4 issuance or installation failure, 5 reload failure.",
    )

    parser.add_argument(
        "command",
        nargs="?",
        choices=["help"],
        help='The "help" command just outputs the usage help',
    )
    parser.add_argument(
        "-c",
        "--config-file",
        dest="config-file",
        help="The path to the certcycle config file to use, in YML format.",
        default=argparse.SUPPRESS,
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_const",
        dest="log-level",
        const="DEBUG",
        help="Debug mode. Equal to setting --log-level=DEBUG.",
        default=argparse.SUPPRESS,
    )
    parser.add_argument(
        "-l",
        "--log-level",
        dest="log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level. One of DEBUG, INFO, WARNING, ERROR, CRITICAL. Defaults to INFO.",
        default=argparse.SUPPRESS,
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        dest="log-level",
        const="WARNING",
        help="Quiet mode. No output at all if there are no errors. Equal to setting --log-level=WARNING.",
        default=argparse.SUPPRESS,
    )
    parser.add_argument(
        "-s",
        "--staging",
        dest="acme-server-url",
        action="store_const",
        const=STAGING_URL,
        help=f"Staging mode. Equal to setting acme-server-url to {STAGING_URL}",
        default=argparse.SUPPRESS,
    )
    parser.add_argument(
        "-v",
        "--version",
        dest="version",
        action="store_true",
        help="Show version and exit.",
        default=argparse.SUPPRESS,
    )
    return parser


def parse_args(
    mockargs: list[str] | None = None,
) -> tuple[argparse.ArgumentParser, argparse.Namespace]:
    """Parse and return command-line args."""
    parser = get_parser()
    args = parser.parse_args(mockargs if mockargs is not None else sys.argv[1:])
    return parser, args


def terminate(signum: int, frame: types.FrameType | None) -> None:
    """Turn a termination signal into SystemExit so the workspace is removed and the service started."""
    logger.warning(f"Got signal {signum}, aborting")
    raise SystemExit(128 + signum)


def main(mockargs: list[str] | None = None) -> None:
    """Read config, instantiate the Certcycle class and renew the certificate.

    - Read config from file and/or commandline args
    - Configure logging
    - Run the renewal and exit with the exit code of the first error, if any

    Args:
        mockargs: A list of args to use instead of command-line arguments. Optional.

    Returns:
        None
    """
    # get commandline arguments
    parser, args = parse_args(mockargs)

    if args.command == "help":
        parser.print_help()
        sys.exit(0)

    if hasattr(args, "version"):
        print(f"certcycle version {__version__}")  # noqa: T201
        sys.exit(0)

    # read and parse the config file
    config: dict[str, object] = {}
    if hasattr(args, "config-file"):
        try:
            with Path(getattr(args, "config-file")).open() as f:
                config = yaml.load(f, Loader=yaml.SafeLoader) or {}
        except Exception:
            logger.exception(f"Unable to parse YAML config file {getattr(args, 'config-file')} - bailing out.")
            sys.exit(1)
        if not isinstance(config, dict):
            logger.error(f"YAML config file {getattr(args, 'config-file')} does not contain a mapping - bailing out.")
            sys.exit(1)

    # command line arguments override config file settings
    config.update(vars(args))

    # remove argparse internals from config
    for key in ["command"]:
        if key in config:
            del config[key]

    previous_handlers = {sig: signal.signal(sig, terminate) for sig in (signal.SIGTERM, signal.SIGHUP)}
    try:
        certcycle = Certcycle(userconfig=config)
        certcycle.renew()
    except CertcycleError as e:
        logger.debug(f"Got {type(e).__name__}, exiting with exit code {e.exitcode}")
        sys.exit(e.exitcode)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)


if __name__ == "__main__":
    with PidFile("certcycle"):
        main()
