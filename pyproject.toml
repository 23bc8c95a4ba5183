[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "keslib"
version = "0.1.0"
description = "Secret and HMAC keys, legacy ciphertext parsing, TLS proxy verification and HTTP retry helpers"
requires-python = ">=3.10"
keywords = ["kms", "encryption", "aes-gcm", "chacha20-poly1305", "hmac", "tls", "proxy", "retry"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security :: Cryptography",
    "Topic :: Internet :: WWW/HTTP",
]
dependencies = [
    "cryptography",
    "msgpack",
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["keslib"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
