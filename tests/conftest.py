"""
Pytest configuration and fixtures for the App Store client tests

Builds throwaway P-256 keys and a root -> intermediate -> leaf certificate
chain with cryptography's X.509 builder, and signs JWS payloads carrying the
chain in their x5c header.
"""

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from appstore.common.cert import ChainVerifier, TrustAnchorStore
from appstore.common.config import StoreConfig
from appstore.common.signed_data import SignedDataVerifier

VALID_FROM = datetime(2020, 1, 1, tzinfo=timezone.utc)
VALID_UNTIL = datetime(2040, 1, 1, tzinfo=timezone.utc)

SAMPLE_TRANSACTION = {
    "transactionId": "2000000123456789",
    "originalTransactionId": "2000000000000001",
    "bundleId": "com.example.app",
    "productId": "com.example.app.monthly",
    "purchaseDate": 1700000000000,
    "expiresDate": 1702592000000,
    "quantity": 1,
    "type": "Auto-Renewable Subscription",
    "environment": "Sandbox",
    "transactionReason": "PURCHASE",
    "price": 990,
    "currency": "USD",
}


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def der_b64(cert: x509.Certificate) -> str:
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")


def pkcs8_pem(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def build_certificate(
    subject_cn: str,
    public_key,
    issuer_cn: str,
    issuer_key,
    is_ca: Optional[bool],
    not_before: datetime = VALID_FROM,
    not_after: datetime = VALID_UNTIL,
) -> x509.Certificate:
    """Issue a certificate for public_key signed by issuer_key (is_ca=None omits BasicConstraints)"""
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject_cn)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if is_ca is not None:
        builder = builder.add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    return builder.sign(issuer_key, hashes.SHA256())


@dataclass
class GeneratedChain:
    """A generated chain plus the keys behind it"""
    root: x509.Certificate
    intermediate: x509.Certificate
    leaf: x509.Certificate
    root_key: Any
    intermediate_key: Any
    leaf_key: Any

    @property
    def x5c(self) -> List[str]:
        return [der_b64(self.leaf), der_b64(self.intermediate), der_b64(self.root)]

    @property
    def root_der(self) -> bytes:
        return self.root.public_bytes(serialization.Encoding.DER)


def make_chain(
    root_cn: str = "Test Root CA",
    leaf_key=None,
    leaf_not_before: datetime = VALID_FROM,
    leaf_not_after: datetime = VALID_UNTIL,
) -> GeneratedChain:
    root_key = ec.generate_private_key(ec.SECP256R1())
    intermediate_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = leaf_key or ec.generate_private_key(ec.SECP256R1())

    root = build_certificate(root_cn, root_key.public_key(), root_cn, root_key, is_ca=True)
    intermediate = build_certificate(
        "Test Intermediate CA", intermediate_key.public_key(), root_cn, root_key, is_ca=True
    )
    leaf = build_certificate(
        "Test Signing Leaf", leaf_key.public_key(), "Test Intermediate CA", intermediate_key,
        is_ca=False, not_before=leaf_not_before, not_after=leaf_not_after,
    )
    return GeneratedChain(root, intermediate, leaf, root_key, intermediate_key, leaf_key)


def sign_jws(claims: Dict[str, Any], chain: GeneratedChain, x5c: Optional[List[str]] = None) -> str:
    """Sign claims with the chain's leaf key, embedding the chain as x5c"""
    return jwt.encode(
        claims,
        chain.leaf_key,
        algorithm="ES256",
        headers={"x5c": x5c if x5c is not None else chain.x5c},
    )


def compact(header: Dict[str, Any], payload: bytes, signature: bytes) -> str:
    """Assemble a compact JWS from raw parts without signing"""
    return ".".join([
        b64url(json.dumps(header).encode("utf-8")),
        b64url(payload),
        b64url(signature),
    ])


@pytest.fixture
def chain() -> GeneratedChain:
    """A valid root -> intermediate -> leaf chain"""
    return make_chain()


@pytest.fixture
def anchors(chain) -> TrustAnchorStore:
    """Trust store pinning the chain's root"""
    return TrustAnchorStore.load_anchors(chain.root_der)


@pytest.fixture
def chain_verifier(anchors) -> ChainVerifier:
    return ChainVerifier(anchors)


@pytest.fixture
def signed_data_verifier(chain_verifier) -> SignedDataVerifier:
    return SignedDataVerifier(chain_verifier)


@pytest.fixture
def signing_key():
    """App Store Connect API key (.p8 equivalent)"""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def store_config(signing_key, chain) -> StoreConfig:
    return StoreConfig(
        key_content=pkcs8_pem(signing_key),
        key_id="2X9R4HXF34",
        issuer="57246542-96fe-1a63-e053-0824d011072a",
        bundle_id="com.example.app",
        sandbox=True,
        root_certificates=[chain.root_der],
    )


@pytest.fixture
def chain_factory():
    """Factory for chains with custom roots, leaf keys or validity windows"""
    return make_chain


@pytest.fixture
def jws_signer():
    """Signs claims with a chain's leaf key"""
    return sign_jws


@pytest.fixture
def compact_jws():
    """Assembles an unsigned compact JWS from raw parts"""
    return compact


@pytest.fixture
def sample_transaction():
    return dict(SAMPLE_TRANSACTION)


@pytest.fixture
def certificate_builder():
    """Issues single certificates for hand-assembled chains"""
    return build_certificate
