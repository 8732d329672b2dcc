import datetime as dt
from pathlib import Path
from types import SimpleNamespace

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID


def make_cert(
    key=None,
    cn: str = "Test Signer",
    issuer=None,
    issuer_key=None,
    ca: bool = False,
    digital_signature: bool = True,
    not_before=None,
    not_after=None,
):
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    now = dt.datetime.now(dt.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(issuer.subject if issuer is not None else name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - dt.timedelta(days=1))
        .not_valid_after(not_after or now + dt.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=digital_signature,
                content_commitment=False,
                key_encipherment=not digital_signature,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )
    signing_key = issuer_key or key
    algorithm = None if isinstance(signing_key, ed25519.Ed25519PrivateKey) else hashes.SHA256()
    return key, builder.sign(signing_key, algorithm)


def write_pfx(path: Path, key, cert, password: str | None = None, chain=None) -> Path:
    encryption = (
        serialization.BestAvailableEncryption(password.encode("utf-8"))
        if password
        else serialization.NoEncryption()
    )
    path.write_bytes(pkcs12.serialize_key_and_certificates(b"signer", key, cert, chain, encryption))
    return path


def write_pem(path: Path, cert, key=None) -> Path:
    data = cert.public_bytes(serialization.Encoding.PEM)
    if key is not None:
        data += key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    path.write_bytes(data)
    return path


@pytest.fixture
def pki(tmp_path):
    """A root CA and a leaf signing certificate issued by it, written to disk."""
    root_key, root_cert = make_cert(cn="Test Root", ca=True)
    leaf_key, leaf_cert = make_cert(cn="Test Signer", issuer=root_cert, issuer_key=root_key)
    return SimpleNamespace(
        root_key=root_key,
        root_cert=root_cert,
        root_pem=write_pem(tmp_path / "root.pem", root_cert),
        key=leaf_key,
        cert=leaf_cert,
        pfx=write_pfx(tmp_path / "signer.pfx", leaf_key, leaf_cert),
    )


@pytest.fixture
def payload_file(tmp_path):
    p = tmp_path / "doc.txt"
    p.write_bytes(b"The quick brown fox jumps over the lazy dog.\n")
    return p
