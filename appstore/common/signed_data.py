"""
appstore/common/signed_data.py

署名付きペイロード（JWS）の検証とクレームのデコード

1. ヘッダーのalgがES256であることを確認（鍵の有無に関わらず、それ以外は即座に拒否）
2. ChainVerifierで証明書チェーンを検証し、信頼済みleaf公開鍵を取得
3. payloadをbase64url-decode（不正ならMALFORMED_CLAIMS）
4. header.payload に対するES256署名（raw R || S、64バイト）を検証
5. payloadを型付きクレームにデコード

チェーンまたは署名の検証に失敗したペイロードからクレームが返ることはない。
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Type, TypeVar

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, utils as asym_utils
from pydantic import BaseModel, ValidationError

from appstore.common.cert import ChainVerifier, read_protected_header
from appstore.common.errors import PayloadError, PayloadFailureReason, VerificationError
from appstore.common.logger import get_logger, log_crypto_operation
from appstore.common.models import JWSRenewalInfo, JWSTransaction, NotificationPayload

logger = get_logger(__name__, service_name='signed_data')

ACCEPTED_ALGORITHM = "ES256"

# P-256の場合、RとSは各32バイト
ES256_COORDINATE_SIZE = 32

ClaimsT = TypeVar("ClaimsT", bound=BaseModel)


def _b64url_decode(segment: str) -> bytes:
    padded = segment + '=' * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode('ascii'))


@dataclass(frozen=True)
class DecodeFailure:
    """バッチデコードで拒否されたペイロード"""
    index: int
    error: VerificationError


@dataclass
class BatchDecodeResult:
    """バッチデコードの結果（成功分は入力順を保持）"""
    claims: List[BaseModel] = field(default_factory=list)
    failures: List[DecodeFailure] = field(default_factory=list)


class SignedDataVerifier:
    """
    署名付きペイロード検証クラス

    状態を持たないため、複数スレッドからロックなしで呼び出せる。
    """

    def __init__(self, chain_verifier: ChainVerifier):
        self.chain_verifier = chain_verifier

    def decode(
        self,
        signed_payload: str,
        model: Type[ClaimsT] = JWSTransaction,
        at: Optional[datetime] = None
    ) -> ClaimsT:
        """
        署名付きペイロードを検証してクレームをデコード

        Args:
            signed_payload: compact JWS文字列
            model: デコード先のクレーム型（デフォルト: JWSTransaction）
            at: 証明書の有効期間を判定する時刻（デフォルト: 現在時刻）

        Returns:
            検証済みクレーム

        Raises:
            ChainValidationError: 証明書チェーンの検証に失敗した場合
            PayloadError: アルゴリズム・署名・クレームのいずれかが不正な場合
        """
        header = read_protected_header(signed_payload)

        # アルゴリズム混同攻撃対策: 鍵を取得する前にalgを確定させる
        alg = header.get("alg")
        if alg != ACCEPTED_ALGORITHM:
            logger.warning(f"[SignedData] Rejected payload with alg={alg!r}")
            raise PayloadError(
                PayloadFailureReason.UNSUPPORTED_ALGORITHM,
                f"alg must be {ACCEPTED_ALGORITHM}, got {alg!r}"
            )

        public_key = self.chain_verifier.verify_header(header, at=at)

        header_b64, payload_b64, signature_b64 = signed_payload.split('.')
        try:
            payload = _b64url_decode(payload_b64)
        except (binascii.Error, ValueError) as e:
            raise PayloadError(PayloadFailureReason.MALFORMED_CLAIMS, f"claims are not base64url: {e}") from e

        self._verify_signature(public_key, f"{header_b64}.{payload_b64}", signature_b64)

        return self._decode_claims(payload, model)

    def decode_transaction(self, signed_transaction: str, at: Optional[datetime] = None) -> JWSTransaction:
        """signedTransactionInfoを検証・デコード"""
        return self.decode(signed_transaction, JWSTransaction, at=at)

    def decode_renewal_info(self, signed_renewal_info: str, at: Optional[datetime] = None) -> JWSRenewalInfo:
        """signedRenewalInfoを検証・デコード"""
        return self.decode(signed_renewal_info, JWSRenewalInfo, at=at)

    def decode_notification(self, signed_payload: str, at: Optional[datetime] = None) -> NotificationPayload:
        """App Store Server Notifications V2 のsignedPayloadを検証・デコード"""
        return self.decode(signed_payload, NotificationPayload, at=at)

    def decode_all(
        self,
        signed_payloads: Iterable[str],
        model: Type[ClaimsT] = JWSTransaction,
        at: Optional[datetime] = None
    ) -> List[ClaimsT]:
        """
        複数の署名付きペイロードをデコード

        検証に失敗したペイロードはスキップし（WARNINGログを出力）、
        成功したものだけを入力順で返却する。

        Args:
            signed_payloads: compact JWS文字列のリスト
            model: デコード先のクレーム型
            at: 証明書の有効期間を判定する時刻

        Returns:
            検証済みクレームのリスト
        """
        return self.decode_all_with_errors(signed_payloads, model, at=at).claims

    def decode_all_with_errors(
        self,
        signed_payloads: Iterable[str],
        model: Type[ClaimsT] = JWSTransaction,
        at: Optional[datetime] = None
    ) -> BatchDecodeResult:
        """複数の署名付きペイロードをデコードし、拒否したものも位置付きで返却"""
        result = BatchDecodeResult()
        for index, signed_payload in enumerate(signed_payloads):
            try:
                result.claims.append(self.decode(signed_payload, model, at=at))
            except VerificationError as e:
                logger.warning(f"[SignedData] Skipped payload #{index}: {e}")
                result.failures.append(DecodeFailure(index=index, error=e))
        return result

    def _verify_signature(
        self,
        public_key: ec.EllipticCurvePublicKey,
        signing_input: str,
        signature_b64: str
    ) -> None:
        try:
            signature = _b64url_decode(signature_b64)
        except (binascii.Error, ValueError) as e:
            raise PayloadError(PayloadFailureReason.SIGNATURE_INVALID, f"signature is not base64url: {e}") from e

        # RFC 7515準拠: raw R || S (64バイト)形式からDER形式に変換
        if len(signature) != 2 * ES256_COORDINATE_SIZE:
            raise PayloadError(
                PayloadFailureReason.SIGNATURE_INVALID,
                f"ES256 signature must be {2 * ES256_COORDINATE_SIZE} bytes, got {len(signature)}"
            )
        r = int.from_bytes(signature[:ES256_COORDINATE_SIZE], byteorder='big')
        s = int.from_bytes(signature[ES256_COORDINATE_SIZE:], byteorder='big')
        der_signature = asym_utils.encode_dss_signature(r, s)

        try:
            public_key.verify(der_signature, signing_input.encode('ascii'), ec.ECDSA(hashes.SHA256()))
        except InvalidSignature as e:
            log_crypto_operation(logger, "verify", ACCEPTED_ALGORITHM, success=False)
            raise PayloadError(PayloadFailureReason.SIGNATURE_INVALID, "JWS signature does not match leaf key") from e

        log_crypto_operation(logger, "verify", ACCEPTED_ALGORITHM)

    def _decode_claims(self, payload: bytes, model: Type[ClaimsT]) -> ClaimsT:
        try:
            claims = json.loads(payload)
        except ValueError as e:
            raise PayloadError(PayloadFailureReason.MALFORMED_CLAIMS, f"claims are not JSON: {e}") from e

        if not isinstance(claims, dict):
            raise PayloadError(PayloadFailureReason.MALFORMED_CLAIMS, "claims must be a JSON object")

        try:
            return model.model_validate(claims)
        except ValidationError as e:
            raise PayloadError(PayloadFailureReason.MALFORMED_CLAIMS, str(e)) from e
