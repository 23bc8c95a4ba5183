# keslib

Building blocks for a key management service: authenticated encryption
with secret keys, HMAC keys, versioned key material, parsing of older
ciphertext formats, verification of requests forwarded by TLS proxies,
and HTTP helpers.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Secret keys

`keslib.key.SecretKey` encrypts with AES-256-GCM or ChaCha20-Poly1305,
chosen by `SecretKeyType.AES256` or `SecretKeyType.CHACHA20`. Each message
gets its own key, derived from the secret key and a random 16 byte IV. The
ciphertext is the sealed data followed by the IV and the nonce, so it is
`key.overhead` (44) bytes longer than the plaintext.

```python
from keslib.key import SecretKey, SecretKeyType

key = SecretKey.generate(SecretKeyType.AES256, None)
ciphertext = key.encrypt(b"hello", b"context")
assert key.decrypt(ciphertext, b"context") == b"hello"
```

`SecretKey(cipher, key_bytes)` builds a key from exactly 32 bytes and
raises `ValueError` otherwise. `generate` reads its bytes from a binary
file-like object, or from the operating system when given `None`.
`bytes(key)` returns the raw key.

`decrypt` also accepts ciphertexts in the older JSON and MessagePack
formats; `keslib.ciphertext.parse_ciphertext` turns those into the flat
format and returns anything else unchanged. `keslib.ciphertext.Ciphertext`
parses the two formats on their own (`from_json`, `from_binary`). A
ciphertext that is malformed or fails authentication raises
`keslib.common.DecryptError`, a subclass of `keslib.common.KesError` that
carries an HTTP status code.

`SecretKeyType.parse` reads the names `AES256`, `AES256-GCM_SHA256`,
`ChaCha20` and `XCHACHA20-POLY1305`. `determine_secret_key_type()` picks
AES-256 in FIPS mode or on machines with AES-GCM hardware support, and
ChaCha20 otherwise.

## HMAC keys

`keslib.key.HMACKey` computes HMAC-SHA-256 checksums. `HMACKey.equal`
compares two checksums in constant time:

```python
from keslib.key import Hash, HMACKey

mac_key = HMACKey.generate(Hash.SHA256, None)
tag = mac_key.sum(b"message")
assert mac_key.equal(tag, mac_key.sum(b"message"))
```

## Key versions

A `keslib.key.KeyVersion` bundles a secret key, an HMAC key, a creation
time and the identity that created it. `encode_key_version` stores it as
base64-encoded protobuf and needs both keys to be present.
`parse_key_version` reads that encoding as well as the older JSON form,
which holds no HMAC key (`has_hmac_key` is then `False`).

```python
from datetime import datetime, timezone

from keslib.key import (
    Hash, HMACKey, KeyVersion, SecretKey, SecretKeyType,
    encode_key_version, parse_key_version,
)

version = KeyVersion(
    key=SecretKey.generate(SecretKeyType.AES256, None),
    hmac_key=HMACKey.generate(Hash.SHA256, None),
    created_at=datetime.now(timezone.utc),
    created_by="a" * 64,
)
stored = encode_key_version(version)
assert parse_key_version(stored) == version
```

`KeyVersion.to_protobuf()` and `KeyVersion.from_protobuf(data)` work with
the protobuf bytes directly.

## Identities and algorithms

`keslib.common.Identity` is a string holding the hex-encoded SHA-256 of a
client's public key; the empty identity is unknown (`is_unknown()`).
`keslib.common.KeyAlgorithm` names the algorithm of a key and `parse`
reads its textual forms.

## HTTP helpers

- `keslib.headers.accepts(headers, content_type)` reports whether an
  `Accept` header allows a content type. `*/*` matches everything and
  patterns such as `text/*` match by prefix. The module also defines
  common header names and content types.
- `keslib.retry.Retry` wraps a `requests.Session` and sends a request
  again after a timeout, a dropped connection or a 5xx response. It tries
  `n` more times (default 2), waiting `delay` (default 0.2 s) plus a random
  part of `jitter` (default 0.8 s) in between. It offers `get`, `head`,
  `post`, `post_form` and `do`. A request that still fails temporarily
  raises `keslib.retry.RetryError`. A streamed body must be seekable;
  `retry_reader` gives a reader a no-op `close`, and `drain_body` reads a
  response body to the end and closes it.
- `keslib.flush.flush_on_write(writer)` wraps a response writer in a
  `FlushWriter` that flushes after every successful write.

## TLS

- `keslib.certificate.certificate_from_file(cert_file, key_file, password)`
  loads a PEM certificate chain and its PEM private key and checks that
  they match. A private key encrypted the legacy PEM way (RFC 1423) is
  decrypted with the password; that encryption does not authenticate the
  data.

  ```python
  from keslib.certificate import certificate_from_file

  password = "password"
  cert = certificate_from_file("server.crt", "server.key", password=password)
  print(cert.leaf.subject)
  ```

- `keslib.certificate.filter_pem(data, predicate)` checks every PEM block
  against a predicate and raises `ValueError` on invalid or rejected data.
- `keslib.certpool.cert_pool_from_file(path)` returns an
  `ssl.SSLContext` for clients that trusts the system roots and the CA
  certificates in a file, or in every file of a directory.
- `keslib.proxy.TLSProxy` accepts requests forwarded by known TLS proxies.
  Register proxies with `add(identity)`. `verify(request)` takes a
  `keslib.proxy.Request` with a `TLSState`; for a request from a proxy it
  replaces the peer certificate with the client certificate found,
  URL-escaped, in the header named by `cert_header`, optionally checks it
  with `verifier`, and records the client address from `X-Forwarded-For`.
  Read that address with `keslib.proxy.forwarded_ip(request)`. Rejected
  requests raise `KesError`. `keslib.proxy.identify(request)` gives the
  identity of a request.

## FIPS mode

`keslib.fips.ENABLED` is `False`. `keslib.fips.tls_ciphers()` and
`keslib.fips.tls_curve_ids()` list the TLS cipher suites and curves in
preference order; with FIPS mode on, ChaCha20 suites and X25519 are left
out, and secret keys refuse to use ChaCha20.

## What this package does not do

It provides no server, no client for a key management service, no key
store and no command-line program. Keys, key versions and ciphertexts are
only built, encoded and parsed in memory; storing and serving them is left
to the code that uses the package.