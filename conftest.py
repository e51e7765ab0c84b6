"""pytest configuration file for the certcycle project."""

import datetime
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

import certcycle.certcycle

DOMAINS = ["example.com", "www.example.com", "dev.example.com"]

OLD_CERT = b"-----BEGIN CERTIFICATE-----\nold certificate\n-----END CERTIFICATE-----\n"
OLD_CHAIN = b"-----BEGIN CERTIFICATE-----\nold chain\n-----END CERTIFICATE-----\n"


def build_certificate(
    subject_cn: str,
    public_key: ec.EllipticCurvePublicKey,
    issuer_cn: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    names: list[str] | None = None,
    ca: bool = False,
) -> x509.Certificate:
    """Build and sign a certificate, a CA certificate if ``ca`` is True."""
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, subject_cn)]))
        .issuer_name(x509.Name([x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=90))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]), critical=False
        )
    return builder.sign(issuer_key, hashes.SHA256())


def pem(*certificates: x509.Certificate) -> bytes:
    """Return the certificates as PEM bytes."""
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certificates)


@pytest.fixture(scope="session")
def server_key() -> ec.EllipticCurvePrivateKey:
    """The private key of the web server."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def other_key() -> ec.EllipticCurvePrivateKey:
    """A private key which is not the web server key."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def root_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def intermediate_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def root_certificate(root_key: ec.EllipticCurvePrivateKey) -> x509.Certificate:
    """A selfsigned root CA certificate."""
    return build_certificate("Test Root X1", root_key.public_key(), "Test Root X1", root_key, ca=True)


@pytest.fixture(scope="session")
def intermediate_certificate(
    intermediate_key: ec.EllipticCurvePrivateKey, root_key: ec.EllipticCurvePrivateKey
) -> x509.Certificate:
    """An intermediate CA certificate signed by the root."""
    return build_certificate("Test Intermediate R3", intermediate_key.public_key(), "Test Root X1", root_key, ca=True)


@pytest.fixture(scope="session")
def issued_certificate(
    server_key: ec.EllipticCurvePrivateKey, intermediate_key: ec.EllipticCurvePrivateKey
) -> x509.Certificate:
    """A certificate for the server key and DOMAINS, signed by the intermediate."""
    return build_certificate(
        DOMAINS[0], server_key.public_key(), "Test Intermediate R3", intermediate_key, names=DOMAINS
    )


class FakeToolkit:
    """Crypto toolkit which writes a fake CSR, or fails."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[dict[str, object]] = []

    def generate_signing_request(self, config: Path, subject: str, key: Path, output: Path) -> bool:
        self.calls.append({"config": config.read_text(), "subject": subject, "key": key, "output": output})
        if self.fail:
            return False
        output.write_bytes(b"fake DER csr")
        return True


class FakeCAClient:
    """CA client which writes the given files to the output dir, or fails.

    Records whether the service was stopped while it ran.
    """

    def __init__(
        self,
        files: dict[str, bytes],
        service_manager: "FakeServiceManager",
        fail: bool = False,
    ) -> None:
        self.files = files
        self.service_manager = service_manager
        self.fail = fail
        self.calls: list[tuple[Path, Path]] = []
        self.service_state_during_issue: str | None = None

    def issue(self, csr: Path, output_dir: Path) -> bool:
        self.calls.append((csr, output_dir))
        self.service_state_during_issue = self.service_manager.state
        assert csr.exists(), "CSR must exist before issuance"
        if self.fail:
            return False
        for filename, content in self.files.items():
            (output_dir / filename).write_bytes(content)
        return True


class FakeServiceManager:
    """Service manager which records the actions, and fails the actions in ``fail``."""

    def __init__(self, fail: tuple[str, ...] = ()) -> None:
        self.fail = fail
        self.actions: list[str] = []
        self.state = "running"

    def _do(self, action: str, newstate: str) -> bool:
        self.actions.append(action)
        if action in self.fail:
            return False
        self.state = newstate
        return True

    def start(self, name: str) -> bool:
        return self._do("start", "running")

    def stop(self, name: str) -> bool:
        return self._do("stop", "stopped")

    def reload(self, name: str) -> bool:
        return self._do("reload", "running")

    def remediation(self, name: str) -> str:
        return f"service {name} restart"


@pytest.fixture
def deployment(
    tmp_path_factory: pytest.TempPathFactory,
    server_key: ec.EllipticCurvePrivateKey,
    root_certificate: x509.Certificate,
) -> dict[str, object]:
    """Write a complete deployment to a temp dir and return the matching config dict.

    Contains the server key, root CA, the currently installed certificate and chain,
    and an executable fake binary standing in for certbot and openssl.
    """
    ssl_dir = tmp_path_factory.mktemp("ssl")
    bin_dir = tmp_path_factory.mktemp("bin")
    temp_dir = tmp_path_factory.mktemp("temp")

    key_file = ssl_dir / "key.pem"
    key_file.write_bytes(
        server_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    root_ca_file = ssl_dir / "root.pem"
    root_ca_file.write_bytes(pem(root_certificate))
    (ssl_dir / "cert.pem").write_bytes(OLD_CERT)
    (ssl_dir / "chain.pem").write_bytes(OLD_CHAIN)

    fakebin = bin_dir / "fakebin"
    fakebin.write_text("#!/bin/sh\nexit 0\n")
    fakebin.chmod(0o755)

    return {
        "domain-list": list(DOMAINS),
        "key-file": str(key_file),
        "root-ca-file": str(root_ca_file),
        "cert-file": str(ssl_dir / "cert.pem"),
        "chain-file": str(ssl_dir / "chain.pem"),
        "ca-client-command": str(fakebin),
        "openssl-command": str(fakebin),
        "temp-dir": str(temp_dir),
        "log-level": "DEBUG",
    }


@pytest.fixture
def issued_files(issued_certificate: x509.Certificate, intermediate_certificate: x509.Certificate) -> dict[str, bytes]:
    """The files certbot leaves in its working directory."""
    return {"0000_cert.pem": pem(issued_certificate), "0000_chain.pem": pem(intermediate_certificate)}


@pytest.fixture
def fakes(issued_files: dict[str, bytes]) -> dict[str, object]:
    """A fresh set of fake collaborators which succeed."""
    service_manager = FakeServiceManager()
    return {
        "toolkit": FakeToolkit(),
        "ca_client": FakeCAClient(files=issued_files, service_manager=service_manager),
        "service_manager": service_manager,
    }


@pytest.fixture
def patched_collaborators(monkeypatch: pytest.MonkeyPatch, fakes: dict[str, object]) -> dict[str, object]:
    """Make ``main()`` use the fake collaborators instead of running real commands."""
    monkeypatch.setattr(certcycle.certcycle, "OpenSSLToolkit", lambda **kwargs: fakes["toolkit"])
    monkeypatch.setattr(certcycle.certcycle, "CertbotClient", lambda **kwargs: fakes["ca_client"])
    monkeypatch.setattr(certcycle.certcycle, "ServiceCommandManager", lambda **kwargs: fakes["service_manager"])
    return fakes


@pytest.fixture
def configfile(tmp_path_factory: pytest.TempPathFactory, deployment: dict[str, object]) -> Path:
    """Write the deployment config to a certcycle.yml file."""
    confpath = tmp_path_factory.mktemp("conf") / "certcycle.yml"
    with confpath.open("w") as f:
        yaml.dump(deployment, f)
    return confpath


@pytest.fixture
def broken_yaml_configfile(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """Write a certcycle.yml file with invalid yml."""
    confpath = tmp_path_factory.mktemp("conf") / "certcycle.yml"
    with confpath.open("w") as f:
        f.write("foo:\nbar")
    return confpath


@pytest.fixture
def make_certcycle(fakes: dict[str, object]) -> Callable[..., certcycle.certcycle.Certcycle]:
    """Return a factory for Certcycle objects using the fake collaborators."""

    def factory(config: dict[str, object], **overrides: object) -> certcycle.certcycle.Certcycle:
        kwargs = {**fakes, **overrides}
        return certcycle.certcycle.Certcycle(
            userconfig=dict(config),
            toolkit=kwargs["toolkit"],  # type: ignore[arg-type]
            ca_client=kwargs["ca_client"],  # type: ignore[arg-type]
            service_manager=kwargs["service_manager"],  # type: ignore[arg-type]
        )

    return factory
