"""TLS parameters chosen according to the FIPS 140 mode."""

from __future__ import annotations

import enum

# Whether cryptographic primitives come from a FIPS 140 certified module.
# In FIPS mode only NIST/FIPS approved primitives may be used.
ENABLED: bool = False


class CipherSuite(enum.IntEnum):
    """TLS cipher suite identifiers."""

    TLS_AES_128_GCM_SHA256 = 0x1301
    TLS_AES_256_GCM_SHA384 = 0x1302
    TLS_CHACHA20_POLY1305_SHA256 = 0x1303

    TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256 = 0xC02B
    TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384 = 0xC02C
    TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256 = 0xC02F
    TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384 = 0xC030
    TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256 = 0xCCA8
    TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256 = 0xCCA9


class CurveID(enum.IntEnum):
    """TLS named elliptic curve identifiers."""

    P256 = 23
    P384 = 24
    P521 = 25
    X25519 = 29


def tls_ciphers() -> list[CipherSuite]:
    """Return the supported TLS cipher suites in preference order."""
    if ENABLED:
        return [
            CipherSuite.TLS_AES_128_GCM_SHA256,  # TLS 1.3
            CipherSuite.TLS_AES_256_GCM_SHA384,
            CipherSuite.TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256,  # TLS 1.2
            CipherSuite.TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384,
            CipherSuite.TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256,
            CipherSuite.TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384,
        ]
    return [
        CipherSuite.TLS_AES_128_GCM_SHA256,  # TLS 1.3
        CipherSuite.TLS_AES_256_GCM_SHA384,
        CipherSuite.TLS_CHACHA20_POLY1305_SHA256,
        CipherSuite.TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256,  # TLS 1.2
        CipherSuite.TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384,
        CipherSuite.TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256,
        CipherSuite.TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256,
        CipherSuite.TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384,
        CipherSuite.TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256,
    ]


def tls_curve_ids() -> list[CurveID]:
    """Return the supported elliptic curves in preference order."""
    if ENABLED:
        return [CurveID.P256, CurveID.P384, CurveID.P521]
    return [CurveID.X25519, CurveID.P256, CurveID.P384, CurveID.P521]