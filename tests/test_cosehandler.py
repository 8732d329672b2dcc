import datetime as dt
import hashlib
from types import MappingProxyType

import cbor2
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

import cosehandler
from conftest import make_cert, write_pem, write_pfx


def _signer(key=None, **kwargs):
    key, cert = make_cert(key=key, **kwargs)
    return cosehandler.SigningCertificate(certificate=cert, private_key=key)


def test_sign_detached_has_nil_payload_and_headers():
    signer = _signer()
    signed = cosehandler.sign(b"hello", signer)

    outer = cbor2.loads(signed)
    assert outer.tag == cosehandler.COSE_SIGN1_TAG

    msg = cosehandler.decode_sign1(signed)
    assert msg.is_detached
    assert msg.payload is None
    assert msg.algorithm is cosehandler.ES256
    assert msg.content_type == "application/cose"
    leaf_der = signer.certificate.public_bytes(serialization.Encoding.DER)
    assert msg.protected[cosehandler.HEADER_X5T] == [-16, hashlib.sha256(leaf_der).digest()]
    assert msg.certificates == [signer.certificate]


def test_sign_embedded_carries_payload_and_content_type():
    signer = _signer()
    msg = cosehandler.decode_sign1(cosehandler.sign(b"hello", signer, embed=True, content_type="text/plain"))
    assert msg.payload == b"hello"
    assert msg.content_type == "text/plain"
    assert cosehandler.verify_signature(msg) == signer.certificate


@pytest.mark.parametrize(
    "key, alg",
    [
        (rsa.generate_private_key(public_exponent=65537, key_size=2048), cosehandler.PS256),
        (ec.generate_private_key(ec.SECP384R1()), cosehandler.ES384),
        (ec.generate_private_key(ec.SECP521R1()), cosehandler.ES512),
        (ed25519.Ed25519PrivateKey.generate(), cosehandler.EDDSA),
    ],
)
def test_sign_and_verify_key_types(key, alg):
    signer = _signer(key=key)
    msg = cosehandler.decode_sign1(cosehandler.sign(b"payload", signer))
    assert msg.algorithm is alg
    cosehandler.verify_signature(msg, b"payload")


def test_verify_rejects_tampered_payload():
    msg = cosehandler.decode_sign1(cosehandler.sign(b"original", _signer()))
    with pytest.raises(cosehandler.CoseSignatureError):
        cosehandler.verify_signature(msg, b"tampered")


def test_verify_detached_requires_payload():
    msg = cosehandler.decode_sign1(cosehandler.sign(b"original", _signer()))
    with pytest.raises(cosehandler.CoseSignatureError):
        cosehandler.verify_signature(msg)


def test_sign_rejects_empty_payload():
    with pytest.raises(ValueError):
        cosehandler.sign(b"", _signer())


def test_sign_rejects_certificate_without_signing_usage():
    with pytest.raises(cosehandler.CoseCertificateError):
        cosehandler.sign(b"x", _signer(digital_signature=False))


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"\xff\xff",
        cbor2.dumps([1, 2, 3]),
        cbor2.dumps(cbor2.CBORTag(98, [b"", {}, None, b""])),
        cbor2.dumps([b"", {}, "text", b""]),
    ],
)
def test_decode_rejects_malformed(data):
    with pytest.raises(cosehandler.CoseSignatureError):
        cosehandler.decode_sign1(data)


def test_decode_accepts_untagged():
    signed = cosehandler.sign(b"hello", _signer(), embed=True)
    untagged = cbor2.dumps(cbor2.loads(signed).value)
    assert cosehandler.decode_sign1(untagged).payload == b"hello"


def test_ecdsa_der_signature_from_raw_invalid():
    with pytest.raises(cosehandler.CoseSignatureError):
        cosehandler.ecdsa_der_signature_from_raw(b"short", 32)


def test_check_chain(pki):
    signer = cosehandler.SigningCertificate(certificate=pki.cert, private_key=pki.key)
    msg = cosehandler.decode_sign1(cosehandler.sign(b"x", signer))
    cosehandler.check_chain(msg, [pki.root_cert])

    _, other_root = make_cert(cn="Other Root", ca=True)
    with pytest.raises(cosehandler.CoseCertificateError):
        cosehandler.check_chain(msg, [other_root])
    with pytest.raises(cosehandler.CoseCertificateError):
        cosehandler.check_chain(msg, [])


def test_check_chain_through_intermediate(pki):
    inter_key, inter_cert = make_cert(cn="Intermediate", ca=True, issuer=pki.root_cert, issuer_key=pki.root_key)
    leaf_key, leaf_cert = make_cert(cn="Leaf", issuer=inter_cert, issuer_key=inter_key)
    signer = cosehandler.SigningCertificate(certificate=leaf_cert, private_key=leaf_key, chain=[inter_cert])
    msg = cosehandler.decode_sign1(cosehandler.sign(b"x", signer))
    assert msg.certificates == [leaf_cert, inter_cert]
    cosehandler.check_chain(msg, [pki.root_cert])


def test_load_pfx(tmp_path, pki):
    loaded = cosehandler.load_pfx(pki.pfx)
    assert loaded.certificate == pki.cert
    assert loaded.thumbprint == cosehandler.thumbprint_of(pki.cert)


def test_load_pfx_password(tmp_path):
    key, cert = make_cert()
    pfx = write_pfx(tmp_path / "pw.pfx", key, cert, password="s3cret")
    assert cosehandler.load_pfx(pfx, "s3cret").certificate == cert
    with pytest.raises(cosehandler.CoseCertificateError):
        cosehandler.load_pfx(pfx, "wrong")


def test_load_pfx_without_key(tmp_path):
    _, cert = make_cert()
    pfx = write_pfx(tmp_path / "nokey.pfx", None, cert)
    with pytest.raises(cosehandler.CoseCertificateError):
        cosehandler.load_pfx(pfx)


def test_load_pfx_malformed(tmp_path):
    bad = tmp_path / "bad.pfx"
    bad.write_bytes(b"not a pfx")
    with pytest.raises(cosehandler.CoseCertificateError):
        cosehandler.load_pfx(bad)


def test_load_certificates_pem_and_der(tmp_path, pki):
    der = tmp_path / "root.cer"
    der.write_bytes(pki.root_cert.public_bytes(serialization.Encoding.DER))
    assert cosehandler.load_certificates(der) == [pki.root_cert]
    assert cosehandler.load_certificates(pki.root_pem) == [pki.root_cert]


def test_normalize_thumbprint():
    assert cosehandler.normalize_thumbprint("ab:cd ef") == "ABCDEF"


def test_store_location_parse():
    assert cosehandler.StoreLocation.parse("currentuser") is cosehandler.StoreLocation.CURRENT_USER
    assert cosehandler.StoreLocation.parse("LocalMachine") is cosehandler.StoreLocation.LOCAL_MACHINE
    with pytest.raises(ValueError):
        cosehandler.StoreLocation.parse("Elsewhere")


def test_directory_store_lookup(tmp_path):
    key, cert = make_cert()
    store = cosehandler.DirectoryCertificateStore(tmp_path)
    my = store.store_dir("My", cosehandler.StoreLocation.CURRENT_USER)
    my.mkdir(parents=True)
    write_pfx(my / "signer.pfx", key, cert)

    thumb = cosehandler.thumbprint_of(cert).lower()
    found = store.find_by_thumbprint(thumb)
    assert found is not None and found.certificate == cert
    assert store.find_by_thumbprint("00" * 20) is None
    assert store.find_by_thumbprint(thumb, "My", cosehandler.StoreLocation.LOCAL_MACHINE) is None


def test_directory_store_pem_entries(tmp_path):
    key, cert = make_cert()
    store = cosehandler.DirectoryCertificateStore(tmp_path)
    machine = store.store_dir("Root", cosehandler.StoreLocation.LOCAL_MACHINE)
    assert machine == tmp_path / "localmachine" / "root"
    machine.mkdir(parents=True)
    write_pem(machine / "signer.pem", cert, key)
    (machine / "notes.txt").write_text("ignored")

    found = store.find_by_thumbprint(cosehandler.thumbprint_of(cert), "Root", cosehandler.StoreLocation.LOCAL_MACHINE)
    assert found is not None and found.private_key is not None


def test_directory_store_entry_without_key(tmp_path):
    _, cert = make_cert()
    store = cosehandler.DirectoryCertificateStore(tmp_path)
    my = store.store_dir("My", cosehandler.StoreLocation.CURRENT_USER)
    my.mkdir(parents=True)
    write_pem(my / "public.pem", cert)
    with pytest.raises(cosehandler.CoseCertificateError):
        store.find_by_thumbprint(cosehandler.thumbprint_of(cert))


def test_directory_store_root_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(cosehandler.STORE_PATH_ENV, str(tmp_path))
    assert cosehandler.DirectoryCertificateStore().root == tmp_path
    monkeypatch.delenv(cosehandler.STORE_PATH_ENV)
    assert cosehandler.DirectoryCertificateStore().root == cosehandler.DEFAULT_STORE_ROOT.expanduser()


def test_decode_accepts_immutable_containers(monkeypatch):
    # cbor2 6 decodes tag contents as tuples and nested maps as immutable mappings.
    signed = cosehandler.sign(b"hello", _signer(), embed=True)
    real_loads = cbor2.loads
    protected_bytes, _, payload, signature = real_loads(signed).value
    frozen = cbor2.CBORTag(18, (protected_bytes, MappingProxyType({}), payload, signature))
    monkeypatch.setattr(cosehandler.cbor2, "loads", lambda data: frozen if data == signed else real_loads(data))

    msg = cosehandler.decode_sign1(signed)
    assert msg.payload == b"hello"
    assert msg.unprotected == {} and isinstance(msg.unprotected, dict)
    cosehandler.verify_signature(msg)


def test_check_chain_rejects_end_entity_as_issuer(pki):
    rogue_key, rogue_cert = make_cert(cn="Rogue", issuer=pki.cert, issuer_key=pki.key)
    signer = cosehandler.SigningCertificate(certificate=rogue_cert, private_key=rogue_key, chain=[pki.cert])
    msg = cosehandler.decode_sign1(cosehandler.sign(b"x", signer))
    with pytest.raises(cosehandler.CoseCertificateError, match="not a CA"):
        cosehandler.check_chain(msg, [pki.root_cert])


def test_check_chain_rejects_issuer_without_cert_sign_usage(pki):
    key, inter_cert = make_cert(cn="No CertSign", ca=False, issuer=pki.root_cert, issuer_key=pki.root_key)
    leaf_key, leaf_cert = make_cert(cn="Leaf", issuer=inter_cert, issuer_key=key)
    signer = cosehandler.SigningCertificate(certificate=leaf_cert, private_key=leaf_key, chain=[inter_cert])
    msg = cosehandler.decode_sign1(cosehandler.sign(b"x", signer))
    with pytest.raises(cosehandler.CoseCertificateError):
        cosehandler.check_chain(msg, [pki.root_cert])


def test_check_chain_rejects_expired_signer(pki):
    now = dt.datetime.now(dt.timezone.utc)
    key, cert = make_cert(
        cn="Expired",
        issuer=pki.root_cert,
        issuer_key=pki.root_key,
        not_before=now - dt.timedelta(days=400),
        not_after=now - dt.timedelta(days=300),
    )
    msg = cosehandler.decode_sign1(cosehandler.sign(b"x", cosehandler.SigningCertificate(certificate=cert, private_key=key)))
    with pytest.raises(cosehandler.CoseCertificateError, match="not valid at"):
        cosehandler.check_chain(msg, [pki.root_cert])


def test_check_chain_checks_validity_at_given_time(pki):
    msg = cosehandler.decode_sign1(
        cosehandler.sign(b"x", cosehandler.SigningCertificate(certificate=pki.cert, private_key=pki.key))
    )
    later = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=60)
    with pytest.raises(cosehandler.CoseCertificateError, match="not valid at"):
        cosehandler.check_chain(msg, [pki.root_cert], now=later)


def test_directory_store_reports_unreadable_entries(tmp_path):
    key, cert = make_cert()
    store = cosehandler.DirectoryCertificateStore(tmp_path)
    my = store.store_dir("My", cosehandler.StoreLocation.CURRENT_USER)
    my.mkdir(parents=True)
    write_pfx(my / "locked.pfx", key, cert, password="secret")

    thumb = cosehandler.thumbprint_of(cert)
    assert store.find_by_thumbprint(thumb) is None
    assert store.unreadable_entries() == [my / "locked.pfx"]

    unlocked = cosehandler.DirectoryCertificateStore(tmp_path, password="secret")
    assert unlocked.unreadable_entries() == []
    assert unlocked.find_by_thumbprint(thumb).certificate == cert
