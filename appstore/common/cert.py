"""
appstore/common/cert.py

署名付きペイロード（JWS）に埋め込まれたx5c証明書チェーンの検証

検証パイプライン（各ステップは個別の失敗理由を返す）:
1. read_protected_header / extract_chain: ヘッダーからx5cを取得   → MISSING_CHAIN
2. parse_chain: DER証明書としてパース                           → MALFORMED_CERTIFICATE
3. verify_chain_links: root→intermediate→leafの署名関係と
   intermediateがCAであることを検証                               → BROKEN_CHAIN
4. verify_validity_period: 各証明書の有効期間を検証              → EXPIRED
5. verify_trust_anchor: rootがピン留めされたルートと一致するか   → UNTRUSTED_ROOT
6. leaf_public_key: leafの公開鍵（P-256）を取得                  → UNSUPPORTED_KEY_TYPE

参照:
- RFC 7515 Section 4.1.6 (x5c)
- https://www.apple.com/certificateauthority/
"""

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jwt.utils import base64url_decode

from appstore.common.errors import (
    ChainFailureReason,
    ChainValidationError,
    ConfigurationError,
)
from appstore.common.logger import get_logger

logger = get_logger(__name__, service_name='cert')

# Apple Root CA - G3 の SHA-256 フィンガープリント
APPLE_ROOT_CA_G3_SHA256 = "63343abfb89a6a03ebb57e2b7b5338e9725e932753e2c18ce075d42cc6fa5870"

# x5c は [leaf, intermediate, root] の順
LEAF_INDEX = 0
INTERMEDIATE_INDEX = 1
ROOT_INDEX = 2
CHAIN_LENGTH = 3


def certificate_fingerprint(cert: x509.Certificate) -> str:
    """証明書のSHA-256フィンガープリント（hex）"""
    return hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest()


def _load_certificate(blob: bytes) -> x509.Certificate:
    if blob.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(blob)
    return x509.load_der_x509_certificate(blob)


class TrustAnchorStore:
    """
    ピン留めされたルート証明書の集合

    構築後は変更されない。チェーンのrootはDERバイト列の完全一致でのみ受理する。
    """

    def __init__(self, certificates: Iterable[x509.Certificate]):
        self._certificates: Tuple[x509.Certificate, ...] = tuple(certificates)
        if not self._certificates:
            raise ConfigurationError("at least one trust anchor is required")
        self._der: FrozenSet[bytes] = frozenset(
            cert.public_bytes(serialization.Encoding.DER) for cert in self._certificates
        )

    @classmethod
    def load_anchors(
        cls,
        *root_cert_bytes: bytes,
        expected_fingerprints: Optional[Iterable[str]] = None
    ) -> "TrustAnchorStore":
        """
        ルート証明書を読み込み

        Args:
            *root_cert_bytes: ルート証明書（DERまたはPEM）
            expected_fingerprints: 許可するSHA-256フィンガープリント（指定時のみ照合）

        Returns:
            TrustAnchorStore: トラストアンカー

        Raises:
            ConfigurationError: 証明書が無い、パースできない、またはフィンガープリントが一致しない場合
        """
        if not root_cert_bytes:
            raise ConfigurationError("at least one trust anchor is required")

        allowed = None
        if expected_fingerprints is not None:
            allowed = {fp.replace(":", "").lower() for fp in expected_fingerprints}

        certificates = []
        for index, blob in enumerate(root_cert_bytes):
            try:
                cert = _load_certificate(blob)
            except (ValueError, TypeError) as e:
                raise ConfigurationError(f"failed to parse trust anchor #{index}: {e}") from e

            fingerprint = certificate_fingerprint(cert)
            if allowed is not None and fingerprint not in allowed:
                raise ConfigurationError(f"trust anchor #{index} fingerprint mismatch: {fingerprint}")

            logger.info(f"[TrustAnchor] Loaded root: {cert.subject.rfc4514_string()} ({fingerprint})")
            certificates.append(cert)

        return cls(certificates)

    @classmethod
    def from_files(
        cls,
        paths: Iterable[Union[str, Path]],
        expected_fingerprints: Optional[Iterable[str]] = None
    ) -> "TrustAnchorStore":
        """ファイルからルート証明書を読み込み"""
        blobs = []
        for path in paths:
            try:
                blobs.append(Path(path).read_bytes())
            except OSError as e:
                raise ConfigurationError(f"failed to read trust anchor {path}: {e}") from e
        return cls.load_anchors(*blobs, expected_fingerprints=expected_fingerprints)

    @property
    def certificates(self) -> Tuple[x509.Certificate, ...]:
        return self._certificates

    def contains(self, cert: x509.Certificate) -> bool:
        """証明書がピン留めされたルートとバイト単位で一致するか"""
        return cert.public_bytes(serialization.Encoding.DER) in self._der

    def __len__(self) -> int:
        return len(self._certificates)


@dataclass(frozen=True)
class CertificateChain:
    """x5cから取り出した証明書チェーン（検証ごとに生成）"""
    leaf: x509.Certificate
    intermediate: x509.Certificate
    root: x509.Certificate

    def __iter__(self):
        return iter((self.leaf, self.intermediate, self.root))


def read_protected_header(signed_payload: str) -> Dict[str, Any]:
    """JWSの保護ヘッダーを署名検証なしで取得"""
    if not isinstance(signed_payload, str) or signed_payload.count(".") != 2:
        raise ChainValidationError(
            ChainFailureReason.MISSING_CHAIN,
            "signed payload is not a compact JWS"
        )
    # payload/signatureの不正はここでは扱わず、後段の検証に任せる
    header_segment = signed_payload.split(".", 1)[0]
    try:
        header = json.loads(base64url_decode(header_segment.encode("ascii")))
    except (binascii.Error, ValueError) as e:
        raise ChainValidationError(
            ChainFailureReason.MISSING_CHAIN,
            f"failed to decode JWS header: {e}"
        ) from e

    if not isinstance(header, dict):
        raise ChainValidationError(ChainFailureReason.MISSING_CHAIN, "JWS header must be a JSON object")
    return header


def extract_chain(header: Dict[str, Any]) -> List[str]:
    """ヘッダーからx5c（base64 DERのリスト）を取得"""
    x5c = header.get("x5c")
    if not isinstance(x5c, list) or len(x5c) < CHAIN_LENGTH:
        raise ChainValidationError(
            ChainFailureReason.MISSING_CHAIN,
            "x5c must contain leaf, intermediate and root certificates"
        )
    if not all(isinstance(entry, str) and entry for entry in x5c[:CHAIN_LENGTH]):
        raise ChainValidationError(
            ChainFailureReason.MISSING_CHAIN,
            "x5c entries must be non-empty strings"
        )
    return x5c[:CHAIN_LENGTH]


def parse_chain(x5c: List[str]) -> CertificateChain:
    """x5cの各要素をX.509証明書としてパース"""
    certificates = []
    for index, entry in enumerate(x5c):
        try:
            # x5cはbase64url ではなく通常のbase64
            der = base64.b64decode(entry, validate=True)
            certificates.append(x509.load_der_x509_certificate(der))
        except (binascii.Error, ValueError) as e:
            raise ChainValidationError(
                ChainFailureReason.MALFORMED_CERTIFICATE,
                f"failed to parse x5c[{index}]: {e}"
            ) from e

    return CertificateChain(
        leaf=certificates[LEAF_INDEX],
        intermediate=certificates[INTERMEDIATE_INDEX],
        root=certificates[ROOT_INDEX],
    )


def _verify_issued_by(child: x509.Certificate, issuer: x509.Certificate, link: str) -> None:
    try:
        child.verify_directly_issued_by(issuer)
    except (InvalidSignature, ValueError, TypeError) as e:
        raise ChainValidationError(
            ChainFailureReason.BROKEN_CHAIN,
            f"{link}: {e or type(e).__name__}"
        ) from e


def verify_intermediate_is_ca(chain: CertificateChain) -> None:
    """intermediateがBasicConstraints ca=TRUEを持つか検証（エンドエンティティ証明書による発行を拒否）"""
    try:
        constraints = chain.intermediate.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound as e:
        raise ChainValidationError(
            ChainFailureReason.BROKEN_CHAIN,
            "intermediate has no BasicConstraints extension"
        ) from e

    if not constraints.ca:
        raise ChainValidationError(
            ChainFailureReason.BROKEN_CHAIN,
            "intermediate is not a CA certificate"
        )


def verify_chain_links(chain: CertificateChain) -> None:
    """intermediateがrootに、leafがintermediateに署名されているか検証"""
    _verify_issued_by(chain.intermediate, chain.root, "intermediate is not issued by root")
    verify_intermediate_is_ca(chain)
    _verify_issued_by(chain.leaf, chain.intermediate, "leaf is not issued by intermediate")


def verify_validity_period(chain: CertificateChain, at: datetime) -> None:
    """各証明書について not_before <= at <= not_after を検証"""
    for name, cert in zip(("leaf", "intermediate", "root"), chain):
        if at < cert.not_valid_before_utc or at > cert.not_valid_after_utc:
            raise ChainValidationError(
                ChainFailureReason.EXPIRED,
                f"{name} certificate is not valid at {at.isoformat()} "
                f"(valid {cert.not_valid_before_utc.isoformat()} - {cert.not_valid_after_utc.isoformat()})"
            )


def verify_trust_anchor(chain: CertificateChain, anchors: TrustAnchorStore) -> None:
    """rootがピン留めされたルートのいずれかと一致するか検証"""
    if not anchors.contains(chain.root):
        raise ChainValidationError(
            ChainFailureReason.UNTRUSTED_ROOT,
            f"root {certificate_fingerprint(chain.root)} is not a trusted anchor"
        )


def leaf_public_key(chain: CertificateChain) -> ec.EllipticCurvePublicKey:
    """leaf証明書のP-256公開鍵を取得"""
    try:
        public_key = chain.leaf.public_key()
    except (ValueError, TypeError) as e:
        raise ChainValidationError(ChainFailureReason.UNSUPPORTED_KEY_TYPE, str(e)) from e

    if not isinstance(public_key, ec.EllipticCurvePublicKey) or not isinstance(public_key.curve, ec.SECP256R1):
        raise ChainValidationError(
            ChainFailureReason.UNSUPPORTED_KEY_TYPE,
            f"leaf public key must be EC P-256, got {type(public_key).__name__}"
        )
    return public_key


class ChainVerifier:
    """
    x5c証明書チェーン検証クラス

    イミュータブルなTrustAnchorStore以外の状態を持たないため、
    複数スレッドからロックなしで呼び出せる。
    """

    def __init__(self, anchors: TrustAnchorStore):
        self.anchors = anchors

    def verify_chain(self, signed_payload: str, at: Optional[datetime] = None) -> ec.EllipticCurvePublicKey:
        """
        署名付きペイロードの証明書チェーンを検証してleafの公開鍵を返却

        Args:
            signed_payload: compact JWS文字列
            at: 検証時刻（デフォルト: 現在時刻）

        Returns:
            ec.EllipticCurvePublicKey: 信頼済みleaf証明書の公開鍵

        Raises:
            ChainValidationError: いずれかの検証ステップに失敗した場合
        """
        header = read_protected_header(signed_payload)
        return self.verify_header(header, at=at)

    def verify_header(self, header: Dict[str, Any], at: Optional[datetime] = None) -> ec.EllipticCurvePublicKey:
        """デコード済みヘッダーのx5cを検証"""
        at = at or datetime.now(timezone.utc)
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        try:
            chain = parse_chain(extract_chain(header))
            verify_chain_links(chain)
            verify_validity_period(chain, at)
            verify_trust_anchor(chain, self.anchors)
            return leaf_public_key(chain)
        except ChainValidationError as e:
            logger.warning(f"[ChainVerifier] Certificate chain rejected: {e}")
            raise
