from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from keslib.certpool import cert_pool_from_file


def _make_ca(common_name):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    return key, cert


def _der(cert):
    return cert.public_bytes(serialization.Encoding.DER)


def _pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def test_single_pem_file(tmp_path):
    _, ca = _make_ca("root")
    ca_dir = tmp_path / "ca"
    ca_dir.mkdir()
    path = ca_dir / "single.pem"
    path.write_bytes(_pem(ca))

    context = cert_pool_from_file(str(path))
    assert _der(ca) in context.get_ca_certs(binary_form=True)


def test_directory_loads_all_files_and_skips_subdirectories(tmp_path):
    _, first = _make_ca("first")
    _, second = _make_ca("second")
    _, hidden = _make_ca("hidden")
    (tmp_path / "a.pem").write_bytes(_pem(first))
    (tmp_path / "b.pem").write_bytes(_pem(second))
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "c.pem").write_bytes(_pem(hidden))

    certs = cert_pool_from_file(tmp_path).get_ca_certs(binary_form=True)
    assert _der(first) in certs
    assert _der(second) in certs
    assert _der(hidden) not in certs


def test_multiple_certificates_in_one_file(tmp_path):
    _, first = _make_ca("first")
    _, second = _make_ca("second")
    path = tmp_path / "bundle.pem"
    path.write_bytes(_pem(first) + _pem(second))

    certs = cert_pool_from_file(path).get_ca_certs(binary_form=True)
    assert {_der(first), _der(second)} <= set(certs)


def test_missing_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        cert_pool_from_file(tmp_path / "missing.pem")


def test_empty_file(tmp_path):
    path = tmp_path / "empty.pem"
    path.write_bytes(b"")
    with pytest.raises(ValueError, match="as CA certificate"):
        cert_pool_from_file(path)


def test_private_key_block_rejected(tmp_path):
    key, ca = _make_ca("root")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    path = tmp_path / "mixed.pem"
    path.write_bytes(_pem(ca) + key_pem)
    with pytest.raises(ValueError, match="unsupported PEM data block"):
        cert_pool_from_file(path)


def test_directory_with_invalid_file(tmp_path):
    _, ca = _make_ca("root")
    (tmp_path / "a.pem").write_bytes(_pem(ca))
    (tmp_path / "b.txt").write_bytes(b"not a certificate")
    with pytest.raises(ValueError, match="no valid PEM data"):
        cert_pool_from_file(tmp_path)