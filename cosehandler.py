#!/usr/bin/env python3
"""
cosehandler.py - COSE_Sign1 signing and validation with X.509 certificates.

This module provides:
- COSE_Sign1 encoding/decoding (RFC 9052) over CBOR via the 'cbor2' library
- Signing with RSA (PS256), ECDSA (ES256/ES384/ES512) and Ed25519 (EdDSA) keys
- x5chain / x5t certificate headers (RFC 9360)
- PKCS#12 (.pfx) loading and a directory-backed certificate store

Notes:
- Detached signatures carry a nil payload; the payload is supplied again at validation time.
- ECDSA signatures are deterministic in shape but not in value, so two signatures over the
  same payload differ byte-wise while both validate.
"""

from __future__ import annotations

import collections.abc
import datetime as dt
import hashlib
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

try:
    import cbor2
except ImportError as e:
    raise SystemExit(
        "Missing dependency 'cbor2'. Install with: python3 -m pip install -e ."
    ) from e

try:
    from cryptography import x509
    from cryptography.exceptions import InvalidSignature
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
    from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature
    from cryptography.hazmat.primitives.serialization import pkcs12
except ImportError as e:
    raise SystemExit(
        "Missing dependency 'cryptography'. Install with: python3 -m pip install -e ."
    ) from e


DEFAULT_CONTENT_TYPE = "application/cose"

# COSE header labels (RFC 9052 / RFC 9360)
HEADER_ALG = 1
HEADER_CONTENT_TYPE = 3
HEADER_X5CHAIN = 33
HEADER_X5T = 34

COSE_SIGN1_TAG = 18
SHA256_ALG_ID = -16

# Embedded payloads are limited to 2 GiB.
MAX_EMBED_SIZE = 2**31 - 1

PEM_PRIVATE_KEY = re.compile(rb"-----BEGIN ([A-Z ]*PRIVATE KEY)-----.+?-----END \1-----", re.DOTALL)


class CoseCertificateError(Exception):
    """The certificate could not be found, loaded, or used for COSE signing."""


class CoseSignatureError(ValueError):
    """The COSE_Sign1 structure could not be decoded or did not verify."""


# ---------------------------
# Algorithms
# ---------------------------

@dataclass(frozen=True)
class CoseAlgorithm:
    name: str
    ident: int
    hash_alg: Optional[hashes.HashAlgorithm]
    size: int = 0


PS256 = CoseAlgorithm("PS256", -37, hashes.SHA256())
ES256 = CoseAlgorithm("ES256", -7, hashes.SHA256(), 32)
ES384 = CoseAlgorithm("ES384", -35, hashes.SHA384(), 48)
ES512 = CoseAlgorithm("ES512", -36, hashes.SHA512(), 66)
EDDSA = CoseAlgorithm("EdDSA", -8, None)

ALGORITHMS_BY_ID = {a.ident: a for a in (PS256, ES256, ES384, ES512, EDDSA)}

EC_ALGORITHMS = {
    "secp256r1": ES256,
    "secp384r1": ES384,
    "secp521r1": ES512,
}


def algorithm_for_key(key: Any) -> CoseAlgorithm:
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return PS256
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        try:
            return EC_ALGORITHMS[key.curve.name]
        except KeyError as e:
            raise CoseCertificateError(f"Unsupported EC curve for COSE signing: {key.curve.name}") from e
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey)):
        return EDDSA
    raise CoseCertificateError(f"Unsupported key type for COSE signing: {type(key).__name__}")


def ecdsa_raw_signature_from_der(der_sig: bytes, size: int) -> bytes:
    r, s = decode_dss_signature(der_sig)
    return r.to_bytes(size, "big") + s.to_bytes(size, "big")


def ecdsa_der_signature_from_raw(raw_sig: bytes, size: int) -> bytes:
    if len(raw_sig) != 2 * size:
        raise CoseSignatureError("Invalid ECDSA raw signature length for curve")
    r = int.from_bytes(raw_sig[:size], "big")
    s = int.from_bytes(raw_sig[size:], "big")
    return encode_dss_signature(r, s)


def _pss(alg: CoseAlgorithm) -> padding.PSS:
    return padding.PSS(mgf=padding.MGF1(alg.hash_alg), salt_length=alg.hash_alg.digest_size)


# ---------------------------
# Certificates
# ---------------------------

@dataclass
class SigningCertificate:
    """A certificate with its private key, plus any extra certificates shipped alongside it."""

    certificate: x509.Certificate
    private_key: Any
    chain: List[x509.Certificate] = field(default_factory=list)

    @property
    def thumbprint(self) -> str:
        return thumbprint_of(self.certificate)


def thumbprint_of(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def normalize_thumbprint(thumbprint: str) -> str:
    return "".join(c for c in thumbprint if c not in " :").upper()


def check_signing_usage(cert: x509.Certificate) -> None:
    """
    Raise CoseCertificateError if the certificate restricts its key usage
    and digitalSignature is not among the allowed usages.
    """
    try:
        usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return
    if not usage.digital_signature:
        raise CoseCertificateError(
            f"Certificate {thumbprint_of(cert)} does not allow digital signatures (KeyUsage)"
        )


def load_pfx(path: Path, password: Optional[str] = None) -> SigningCertificate:
    """
    Load a PKCS#12 file holding a certificate and its private key.
    Raises FileNotFoundError if the file is absent, CoseCertificateError otherwise.
    """
    data = Path(path).read_bytes()
    pw = password.encode("utf-8") if password else None
    try:
        key, cert, extra = pkcs12.load_key_and_certificates(data, pw)
    except ValueError as e:
        raise CoseCertificateError(f"Could not load certificate file {path}: {e}") from e
    if cert is None:
        raise CoseCertificateError(f"Certificate file {path} does not contain a certificate")
    if key is None:
        raise CoseCertificateError(f"Certificate file {path} does not contain a private key")
    return SigningCertificate(certificate=cert, private_key=key, chain=list(extra or []))


def load_pem_bundle(path: Path, password: Optional[str] = None) -> SigningCertificate:
    """
    Load a PEM file holding a certificate (first one is the signer) and its private key.
    """
    data = Path(path).read_bytes()
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise CoseCertificateError(f"Could not load certificate file {path}: {e}") from e
    block = PEM_PRIVATE_KEY.search(data)
    if block is None:
        raise CoseCertificateError(f"Certificate file {path} does not contain a private key")
    try:
        key = serialization.load_pem_private_key(block.group(0), password.encode("utf-8") if password else None)
    except (ValueError, TypeError) as e:
        raise CoseCertificateError(f"Certificate file {path} does not contain a usable private key: {e}") from e
    return SigningCertificate(certificate=certs[0], private_key=key, chain=certs[1:])


def load_certificates(path: Path) -> List[x509.Certificate]:
    """
    Load one or more public certificates from a PEM or DER file.
    """
    data = Path(path).read_bytes()
    try:
        if b"-----BEGIN" in data:
            return x509.load_pem_x509_certificates(data)
        return [x509.load_der_x509_certificate(data)]
    except ValueError as e:
        raise CoseCertificateError(f"Could not load certificate file {path}: {e}") from e


# ---------------------------
# Certificate store
# ---------------------------

class StoreLocation(Enum):
    CURRENT_USER = "CurrentUser"
    LOCAL_MACHINE = "LocalMachine"

    @classmethod
    def parse(cls, value: str) -> "StoreLocation":
        for member in cls:
            if member.value.lower() == value.strip().lower():
                return member
        names = ", ".join(m.value for m in cls)
        raise ValueError(f"Unrecognized store location '{value}' (expected one of: {names})")


STORE_PATH_ENV = "COSESIGNTOOL_STORE_PATH"
DEFAULT_STORE_ROOT = Path("~/.dotnet/corefx/cryptography/x509stores")
STORE_SUFFIXES = (".pfx", ".p12", ".pem")


class DirectoryCertificateStore:
    """
    A certificate store kept as files on disk, laid out the way .NET keeps
    X509Store contents on Linux:

      <root>/<storename>/                      CurrentUser
      <root>/localmachine/<storename>/         LocalMachine

    Each entry is a .pfx/.p12 or .pem file holding a certificate and its key.
    """

    def __init__(self, root: Optional[Path] = None, password: Optional[str] = None):
        if root is None:
            env = os.environ.get(STORE_PATH_ENV)
            root = Path(env) if env else DEFAULT_STORE_ROOT
        self.root = Path(root).expanduser()
        self.password = password

    def store_dir(self, store_name: str, location: StoreLocation) -> Path:
        if location is StoreLocation.LOCAL_MACHINE:
            return self.root / "localmachine" / store_name.lower()
        return self.root / store_name.lower()

    def _entries(self, directory: Path) -> List[Path]:
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in STORE_SUFFIXES)

    def find_by_thumbprint(
        self,
        thumbprint: str,
        store_name: str = "My",
        location: StoreLocation = StoreLocation.CURRENT_USER,
    ) -> Optional[SigningCertificate]:
        """
        Return the certificate whose SHA-1 thumbprint matches, or None.
        Raises CoseCertificateError if the match has no usable private key.
        """
        wanted = normalize_thumbprint(thumbprint)
        for entry in self._entries(self.store_dir(store_name, location)):
            cert = self._peek_certificate(entry)
            if cert is None or thumbprint_of(cert) != wanted:
                continue
            if entry.suffix.lower() == ".pem":
                return load_pem_bundle(entry, self.password)
            return load_pfx(entry, self.password)
        return None

    def unreadable_entries(
        self,
        store_name: str = "My",
        location: StoreLocation = StoreLocation.CURRENT_USER,
    ) -> List[Path]:
        """
        Entries whose certificate cannot be read with the store's password.
        find_by_thumbprint skips these, so a lookup can miss a certificate held in one.
        """
        return [e for e in self._entries(self.store_dir(store_name, location)) if self._peek_certificate(e) is None]

    def _peek_certificate(self, entry: Path) -> Optional[x509.Certificate]:
        data = entry.read_bytes()
        if entry.suffix.lower() == ".pem":
            try:
                return x509.load_pem_x509_certificates(data)[0]
            except ValueError:
                return None
        pw = self.password.encode("utf-8") if self.password else None
        try:
            _, cert, _ = pkcs12.load_key_and_certificates(data, pw)
        except ValueError:
            return None
        return cert


# ---------------------------
# COSE_Sign1
# ---------------------------

@dataclass
class Sign1Message:
    protected: Dict[int, Any]
    protected_bytes: bytes
    unprotected: Dict[Any, Any]
    payload: Optional[bytes]
    signature: bytes

    @property
    def algorithm(self) -> CoseAlgorithm:
        alg_id = self.protected.get(HEADER_ALG)
        try:
            return ALGORITHMS_BY_ID[alg_id]
        except KeyError as e:
            raise CoseSignatureError(f"Unsupported COSE algorithm: {alg_id}") from e

    @property
    def content_type(self) -> Optional[str]:
        return self.protected.get(HEADER_CONTENT_TYPE)

    @property
    def certificates(self) -> List[x509.Certificate]:
        """x5chain from the protected header, falling back to the unprotected one."""
        chain = self.protected.get(HEADER_X5CHAIN, self.unprotected.get(HEADER_X5CHAIN))
        if chain is None:
            return []
        if isinstance(chain, bytes):
            chain = [chain]
        try:
            return [x509.load_der_x509_certificate(c) for c in chain]
        except (TypeError, ValueError) as e:
            raise CoseSignatureError(f"Invalid x5chain header: {e}") from e

    @property
    def is_detached(self) -> bool:
        return self.payload is None


def sig_structure(protected_bytes: bytes, payload: bytes) -> bytes:
    return cbor2.dumps(["Signature1", protected_bytes, b"", payload])


def build_protected_header(cert: SigningCertificate, alg: CoseAlgorithm, content_type: str) -> Dict[int, Any]:
    leaf = cert.certificate.public_bytes(serialization.Encoding.DER)
    chain = [leaf] + [c.public_bytes(serialization.Encoding.DER) for c in cert.chain]
    return {
        HEADER_ALG: alg.ident,
        HEADER_CONTENT_TYPE: content_type,
        HEADER_X5CHAIN: chain[0] if len(chain) == 1 else chain,
        HEADER_X5T: [SHA256_ALG_ID, hashlib.sha256(leaf).digest()],
    }


def _sign_bytes(key: Any, alg: CoseAlgorithm, data: bytes) -> bytes:
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(data, _pss(alg), alg.hash_alg)
    if isinstance(key, ec.EllipticCurvePrivateKey):
        der = key.sign(data, ec.ECDSA(alg.hash_alg))
        return ecdsa_raw_signature_from_der(der, alg.size)
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return key.sign(data)
    raise CoseCertificateError(f"Unsupported private key type: {type(key).__name__}")


def sign(
    payload: bytes,
    cert: SigningCertificate,
    embed: bool = False,
    content_type: str = DEFAULT_CONTENT_TYPE,
) -> bytes:
    """
    Return a tagged COSE_Sign1 message over payload.
    Raises ValueError for an empty or oversized payload and CoseCertificateError
    if the certificate cannot be used for signing.
    """
    if not payload:
        raise ValueError("Payload is empty; nothing to sign")
    if embed and len(payload) > MAX_EMBED_SIZE:
        raise ValueError("Payload is too large to embed (limit is 2 GiB); use a detached signature")

    check_signing_usage(cert.certificate)
    alg = algorithm_for_key(cert.private_key)
    protected_bytes = cbor2.dumps(build_protected_header(cert, alg, content_type or DEFAULT_CONTENT_TYPE))
    signature = _sign_bytes(cert.private_key, alg, sig_structure(protected_bytes, payload))
    message = [protected_bytes, {}, payload if embed else None, signature]
    return cbor2.dumps(cbor2.CBORTag(COSE_SIGN1_TAG, message))


def decode_sign1(data: bytes) -> Sign1Message:
    """
    Decode a COSE_Sign1 message (tagged or untagged).
    Raises CoseSignatureError on malformed input.
    """
    try:
        obj = cbor2.loads(data)
    except (cbor2.CBORDecodeError, ValueError, EOFError) as e:
        raise CoseSignatureError(f"Signature is not valid CBOR: {e}") from e
    if isinstance(obj, cbor2.CBORTag):
        if obj.tag != COSE_SIGN1_TAG:
            raise CoseSignatureError(f"Unexpected CBOR tag {obj.tag} (expected COSE_Sign1 tag 18)")
        obj = obj.value
    if not isinstance(obj, (list, tuple)) or len(obj) != 4:
        raise CoseSignatureError("Signature is not a COSE_Sign1 structure")

    protected_bytes, unprotected, payload, signature = obj
    if not isinstance(protected_bytes, bytes) or not isinstance(signature, bytes):
        raise CoseSignatureError("COSE_Sign1 protected header and signature must be byte strings")
    if payload is not None and not isinstance(payload, bytes):
        raise CoseSignatureError("COSE_Sign1 payload must be a byte string or nil")
    try:
        protected = cbor2.loads(protected_bytes) if protected_bytes else {}
    except (cbor2.CBORDecodeError, ValueError, EOFError) as e:
        raise CoseSignatureError(f"Protected header is not valid CBOR: {e}") from e
    if not isinstance(protected, collections.abc.Mapping) or not isinstance(unprotected, collections.abc.Mapping):
        raise CoseSignatureError("COSE_Sign1 headers must be maps")

    return Sign1Message(
        protected=dict(protected),
        protected_bytes=protected_bytes,
        unprotected=dict(unprotected),
        payload=payload,
        signature=signature,
    )


def verify_signature(message: Sign1Message, payload: Optional[bytes] = None) -> x509.Certificate:
    """
    Verify the signature with the leaf certificate from x5chain and return that certificate.
    For detached messages the payload must be supplied.
    Raises CoseSignatureError on failure.
    """
    content = message.payload if payload is None else payload
    if content is None:
        raise CoseSignatureError("Signature is detached and no payload was supplied")

    certs = message.certificates
    if not certs:
        raise CoseSignatureError("Signature does not carry an x5chain header")
    leaf = certs[0]

    x5t = message.protected.get(HEADER_X5T)
    if x5t is not None:
        leaf_der = leaf.public_bytes(serialization.Encoding.DER)
        if not isinstance(x5t, (list, tuple)) or len(x5t) != 2 or x5t[0] != SHA256_ALG_ID:
            raise CoseSignatureError("Unsupported x5t header (expected SHA-256)")
        if x5t[1] != hashlib.sha256(leaf_der).digest():
            raise CoseSignatureError("x5t header does not match the signing certificate")

    alg = message.algorithm
    data = sig_structure(message.protected_bytes, content)
    pub = leaf.public_key()
    try:
        if alg is PS256 and isinstance(pub, rsa.RSAPublicKey):
            pub.verify(message.signature, data, _pss(alg), alg.hash_alg)
        elif alg.hash_alg is not None and isinstance(pub, ec.EllipticCurvePublicKey):
            if algorithm_for_key(pub) is not alg:
                raise CoseSignatureError(f"Algorithm {alg.name} does not match the certificate's curve")
            der = ecdsa_der_signature_from_raw(message.signature, alg.size)
            pub.verify(der, data, ec.ECDSA(alg.hash_alg))
        elif alg is EDDSA and isinstance(pub, ed25519.Ed25519PublicKey):
            pub.verify(message.signature, data)
        else:
            raise CoseSignatureError(f"Algorithm {alg.name} does not match the certificate's key type")
    except InvalidSignature as e:
        raise CoseSignatureError("Signature does not match the payload") from e
    return leaf


def check_chain(
    message: Sign1Message,
    roots: Sequence[x509.Certificate],
    now: Optional[dt.datetime] = None,
) -> None:
    """
    Verify that the x5chain links up to one of the supplied root certificates.

    Every certificate on the path must be within its validity period at `now`,
    and every issuer must be a CA (BasicConstraints ca=True) allowed to sign
    certificates (KeyUsage keyCertSign) within its path length constraint.
    Raises CoseCertificateError if it does not.
    """
    certs = message.certificates
    if not certs:
        raise CoseCertificateError("Signature does not carry an x5chain header")
    if not roots:
        raise CoseCertificateError("No trusted roots were supplied")
    now = now or dt.datetime.now(dt.timezone.utc)

    root_thumbprints = {thumbprint_of(r) for r in roots}
    for depth, cert in enumerate(certs):
        _check_validity(cert, now)
        if thumbprint_of(cert) in root_thumbprints:
            return
        issuers = [r for r in roots if _issued_by(cert, r)]
        if issuers:
            errors = []
            for root in issuers:
                try:
                    _check_issuer(root, cert, depth, now)
                except CoseCertificateError as e:
                    errors.append(e)
                    continue
                return
            raise errors[0]
        following = certs[depth + 1:depth + 2]
        if not following or not _issued_by(cert, following[0]):
            raise CoseCertificateError(
                f"Certificate {cert.subject.rfc4514_string()} is not issued by the chain or a trusted root"
            )
        _check_issuer(following[0], cert, depth, now)
    raise CoseCertificateError("Certificate chain does not end in a trusted root")


def _check_validity(cert: x509.Certificate, now: dt.datetime) -> None:
    if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
        raise CoseCertificateError(
            f"Certificate {cert.subject.rfc4514_string()} is not valid at {now.isoformat()} "
            f"(valid from {cert.not_valid_before_utc.isoformat()} to {cert.not_valid_after_utc.isoformat()})"
        )


def _check_issuer(issuer: x509.Certificate, cert: x509.Certificate, depth: int, now: dt.datetime) -> None:
    """
    `depth` is the number of intermediate certificates between `issuer` and the leaf.
    """
    name = issuer.subject.rfc4514_string()
    try:
        constraints = issuer.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        constraints = None
    if constraints is None or not constraints.ca:
        raise CoseCertificateError(f"Certificate {name} is not a CA and cannot issue {cert.subject.rfc4514_string()}")
    if constraints.path_length is not None and depth > constraints.path_length:
        raise CoseCertificateError(f"Certificate {name} exceeds its path length constraint")
    try:
        usage = issuer.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        usage = None
    if usage is not None and not usage.key_cert_sign:
        raise CoseCertificateError(f"Certificate {name} is not allowed to sign certificates (KeyUsage)")
    _check_validity(issuer, now)


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True
