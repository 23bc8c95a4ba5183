import datetime
import ipaddress
from urllib.parse import quote_plus

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.x509.oid import NameOID

from keslib.common import IDENTITY_UNKNOWN, Identity, KesError
from keslib.proxy import (
    Request,
    TLSProxy,
    TLSState,
    forwarded_ip,
    identify,
)

CLIENT_CERT = """-----BEGIN CERTIFICATE-----
MIIBETCBxKADAgECAhEAwNfpyTO85V8w7ecjWU8CdDAFBgMrZXAwDzENMAsGA1UE
AxMEcm9vdDAeFw0xOTEyMTYyMjQ2NDdaFw0yMDAxMTUyMjQ2NDdaMA8xDTALBgNV
BAMTBHJvb3QwKjAFBgMrZXADIQDNKcY+Mv84QGUEyC/NIvJefLjt9NGGQ9kj5eEX
e2QNGaM1MDMwDgYDVR0PAQH/BAQDAgeAMBMGA1UdJQQMMAoGCCsGAQUFBwMCMAwG
A1UdEwEB/wQCMAAwBQYDK2VwA0EAqUvabyUgcQYp+dPFZpPBycx9+2sWEwwBsybk
JPbwv+fAB2l3rjHt2u9iWL6a2C9xzLh8ni+o2YIWLCGhMSfqBA==
-----END CERTIFICATE-----"""

NO_PEM_TYPE_CLIENT_CERT = """MIIBETCBxKADAgECAhEAwNfpyTO85V8w7ecjWU8CdDAFBgMrZXAwDzENMAsGA1UE
AxMEcm9vdDAeFw0xOTEyMTYyMjQ2NDdaFw0yMDAxMTUyMjQ2NDdaMA8xDTALBgNV
BAMTBHJvb3QwKjAFBgMrZXADIQDNKcY+Mv84QGUEyC/NIvJefLjt9NGGQ9kj5eEX
e2QNGaM1MDMwDgYDVR0PAQH/BAQDAgeAMBMGA1UdJQQMMAoGCCsGAQUFBwMCMAwG
A1UdEwEB/wQCMAAwBQYDK2VwA0EAqUvabyUgcQYp+dPFZpPBycx9+2sWEwwBsybk
JPbwv+fAB2l3rjHt2u9iWL6a2C9xzLh8ni+o2YIWLCGhMSfqBA=="""

UNESCAPED_CLIENT_CERT = "%A" + CLIENT_CERT

ID_A = "57eb2da320a48ebe2750e95c50b3d64240aef4cd5d54c28a4f25155e88c98580"
ID_B = "163d766f3e88f2a02b15a46bc541cc679c4cbb0a060405f298d5fc0d9d876bb3"


def _make_cert(key=None, ca=False, name="test"):
    key = key or ed25519.Ed25519PrivateKey.generate()
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(key, None)
    )


def _pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.mark.parametrize(
    "identities",
    [
        [],
        [ID_A],
        [IDENTITY_UNKNOWN, ID_A],
        [IDENTITY_UNKNOWN, ID_A, ID_B],
    ],
)
def test_tls_proxy_add(identities):
    proxy = TLSProxy()
    for identity in identities:
        proxy.add(identity)
        assert proxy.is_proxy(identity) == (not Identity(identity).is_unknown())


def test_unknown_identity_is_never_a_proxy():
    proxy = TLSProxy()
    proxy.add(IDENTITY_UNKNOWN)
    assert proxy.is_proxy(IDENTITY_UNKNOWN) is False
    assert proxy.is_proxy(ID_A) is False


@pytest.mark.parametrize(
    "cert_header, headers, message",
    [
        ("", {}, "no client certificate is present"),
        (
            "X-Forwarded-Ssl-Client-Cert",
            {"X-Forwarded-Ssl-Client-Cert": [quote_plus(CLIENT_CERT), quote_plus(CLIENT_CERT)]},
            "too many client certificates are present",
        ),
        (
            "X-Forwarded-Ssl-Client-Cert",
            {"X-Ssl-Cert": [quote_plus(CLIENT_CERT)]},
            "no client certificate is present",
        ),
        (
            "X-Tls-Client-Cert",
            {"X-Tls-Client-Cert": [quote_plus(NO_PEM_TYPE_CLIENT_CERT)]},
            "invalid client certificate",
        ),
        (
            "X-Tls-Client-Cert",
            {"X-Tls-Client-Cert": [UNESCAPED_CLIENT_CERT]},
            "invalid client certificate",
        ),
    ],
)
def test_get_client_certificate_errors(cert_header, headers, message):
    proxy = TLSProxy(cert_header=cert_header)
    with pytest.raises(KesError) as exc:
        proxy.get_client_certificate(headers)
    assert exc.value == KesError(400, message)


def test_get_client_certificate_success():
    proxy = TLSProxy(cert_header="X-Forwarded-Ssl-Client-Cert")
    cert = proxy.get_client_certificate(
        {"X-Forwarded-Ssl-Client-Cert": [quote_plus(CLIENT_CERT)]}
    )
    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "root"


def test_get_client_certificate_header_name_is_case_insensitive():
    proxy = TLSProxy(cert_header="x-forwarded-ssl-client-cert")
    cert = proxy.get_client_certificate({"X-Forwarded-Ssl-Client-Cert": quote_plus(CLIENT_CERT)})
    assert cert.serial_number == x509.load_pem_x509_certificate(CLIENT_CERT.encode()).serial_number


def test_identify_without_tls_is_unknown():
    assert identify(Request()) == IDENTITY_UNKNOWN


def test_identify_properties():
    key = ed25519.Ed25519PrivateKey.generate()
    first = identify(Request(tls=TLSState([_make_cert(key)])))
    second = identify(Request(tls=TLSState([_make_cert(key, name="other")])))
    different = identify(Request(tls=TLSState([_make_cert()])))
    assert len(first) == 64
    assert all(c in "0123456789abcdef" for c in first)
    assert first == second
    assert first != different


def test_identify_ignores_ca_and_rejects_ambiguity():
    leaf = _make_cert()
    ca = _make_cert(ca=True)
    alone = identify(Request(tls=TLSState([leaf])))
    assert identify(Request(tls=TLSState([ca, leaf]))) == alone
    assert identify(Request(tls=TLSState([ca]))) == IDENTITY_UNKNOWN
    assert identify(Request(tls=TLSState([leaf, _make_cert()]))) == IDENTITY_UNKNOWN


def test_verify_requires_tls():
    with pytest.raises(KesError) as exc:
        TLSProxy().verify(Request())
    assert exc.value == KesError(400, "insecure connection: TLS required")


@pytest.mark.parametrize(
    "certs, message",
    [
        ([], "no client certificate is present"),
        (["ca"], "no client certificate is present"),
        (["leaf", "leaf"], "too many client certificates are present"),
    ],
)
def test_verify_peer_certificate_count(certs, message):
    peers = [_make_cert(ca=(kind == "ca")) for kind in certs]
    with pytest.raises(KesError) as exc:
        TLSProxy().verify(Request(tls=TLSState(peers)))
    assert exc.value == KesError(400, message)


def test_verify_non_proxy_filters_ca_certificates():
    leaf = _make_cert()
    request = Request(tls=TLSState([_make_cert(ca=True), leaf]))
    TLSProxy().verify(request)
    assert request.tls.peer_certificates == [leaf]
    assert forwarded_ip(request) is None


def _proxy_request(headers):
    proxy_cert = _make_cert()
    request = Request(headers=headers, tls=TLSState([proxy_cert]))
    proxy = TLSProxy(cert_header="X-Tls-Client-Cert")
    proxy.add(identify(request))
    return proxy, request


def test_verify_proxy_replaces_peer_certificate():
    client = _make_cert(name="client")
    proxy, request = _proxy_request({"X-Tls-Client-Cert": [quote_plus(_pem(client))]})
    proxy.verify(request)
    assert request.tls.peer_certificates == [client]
    assert request.tls.verified_chains == []
    assert identify(request) == identify(Request(tls=TLSState([client])))


def test_verify_proxy_without_client_certificate():
    proxy, request = _proxy_request({})
    with pytest.raises(KesError) as exc:
        proxy.verify(request)
    assert exc.value == KesError(400, "no client certificate is present")


@pytest.mark.parametrize(
    "forwarded, expected",
    [
        ("10.1.2.3", ipaddress.ip_address("10.1.2.3")),
        ("10.1.2.3:4567, 192.0.2.1", ipaddress.ip_address("10.1.2.3")),
        ("[2001:db8::1]:443", ipaddress.ip_address("2001:db8::1")),
        ("2001:db8::2", ipaddress.ip_address("2001:db8::2")),
        ("unknown", None),
        ("not-an-ip", None),
    ],
)
def test_verify_proxy_forwarded_ip(forwarded, expected):
    client = _make_cert(name="client")
    proxy, request = _proxy_request(
        {"X-Tls-Client-Cert": [quote_plus(_pem(client))], "X-Forwarded-For": [forwarded]}
    )
    proxy.verify(request)
    assert forwarded_ip(request) == expected


def test_forwarded_ip_of_none():
    assert forwarded_ip(None) is None


def test_verify_proxy_with_failing_verifier():
    client = _make_cert(name="client")
    proxy, request = _proxy_request({"X-Tls-Client-Cert": [quote_plus(_pem(client))]})

    def reject(cert):
        raise ValueError("untrusted")

    proxy.verifier = reject
    with pytest.raises(KesError) as exc:
        proxy.verify(request)
    assert exc.value == KesError(403, "")


def test_verify_proxy_with_accepting_verifier():
    client = _make_cert(name="client")
    proxy, request = _proxy_request({"X-Tls-Client-Cert": [quote_plus(_pem(client))]})
    proxy.verifier = lambda cert: [[cert]]
    proxy.verify(request)
    assert request.tls.verified_chains == [[client]]