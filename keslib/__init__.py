"""Secret and HMAC keys, ciphertext parsing, TLS proxy verification and HTTP helpers."""

__version__ = "0.1.0"