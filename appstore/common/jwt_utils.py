"""
appstore/common/jwt_utils.py

App Store Server API 用 Bearer トークンの生成とキャッシュ

トークン構成（ES256署名のJWT）:
- header: alg=ES256, kid=秘密鍵ID, typ=JWT
- payload:
  - iss: Issuer ID
  - iat: 発行時刻
  - exp: 有効期限（最大60分）
  - aud: "appstoreconnect-v1"
  - bid: バンドルID
  - nonce: 一意な値

参照:
- https://developer.apple.com/documentation/appstoreserverapi/generating_json_web_tokens_for_api_requests
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt

from appstore.common.config import StoreConfig
from appstore.common.crypto import load_signing_key
from appstore.common.errors import ConfigurationError, TokenGenerationError
from appstore.common.logger import get_logger, log_crypto_operation

logger = get_logger(__name__, service_name='token')

ACCEPTED_ALGORITHM = "ES256"
AUDIENCE = "appstoreconnect-v1"
DEFAULT_SAFETY_MARGIN = timedelta(seconds=60)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CachedToken:
    """発行済みトークンとその有効期限"""
    token: str
    expires_at: datetime

    def is_usable(self, now: datetime, safety_margin: timedelta) -> bool:
        """有効期限から安全マージンを引いた時刻より前ならTrue"""
        return now < self.expires_at - safety_margin


class TokenIssuer:
    """
    Bearerトークン発行クラス

    特徴:
    - 秘密鍵は構築時に一度だけパース（不正な鍵は構築時にKeyFormatError）
    - 有効期限の安全マージン内はキャッシュ済みトークンを返却
    - スレッドセーフな実装（threading.Lock使用）
    - キャッシュは完成したトークンでのみ丸ごと置き換え
    """

    def __init__(
        self,
        config: StoreConfig,
        clock: Optional[Callable[[], datetime]] = None,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN
    ):
        """
        Args:
            config: 認証情報
            clock: 現在時刻を返す関数（デフォルト: UTC現在時刻）
            safety_margin: 有効期限の安全マージン（デフォルト: 60秒）

        Raises:
            ConfigurationError: safety_marginがトークン有効期間以上の場合
            KeyFormatError: 秘密鍵が不正な場合
        """
        if safety_margin >= config.token_lifetime:
            raise ConfigurationError("safety_margin must be shorter than token_lifetime")

        self._key_id = config.key_id
        self._issuer = config.issuer
        self._bundle_id = config.bundle_id
        self._lifetime = config.token_lifetime
        self._signing_key = load_signing_key(config.key_content)
        self._clock = clock or utc_now
        self._safety_margin = safety_margin

        self._cached: Optional[CachedToken] = None
        self._lock = threading.Lock()

    def current_token(self) -> str:
        """
        有効なBearerトークンを取得（必要な場合のみ再生成）

        Returns:
            str: JWT文字列

        Raises:
            TokenGenerationError: 署名に失敗した場合
        """
        return self.current().token

    def current(self) -> CachedToken:
        """有効なトークンを有効期限とあわせて取得"""
        with self._lock:
            cached = self._cached
            if cached is not None and cached.is_usable(self._clock(), self._safety_margin):
                return cached
            return self._regenerate()

    def generate(self) -> str:
        """キャッシュの状態に関わらずトークンを再生成"""
        with self._lock:
            return self._regenerate().token

    def invalidate(self) -> None:
        """キャッシュ済みトークンを破棄"""
        with self._lock:
            self._cached = None

    def authorization_header(self) -> str:
        """Authorizationヘッダーの値を取得"""
        return f"Bearer {self.current_token()}"

    def _regenerate(self) -> CachedToken:
        # ロック保持中にのみ呼び出す
        issued_at = self._clock()
        expires_at = issued_at + self._lifetime

        payload = {
            "iss": self._issuer,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "aud": AUDIENCE,
            "bid": self._bundle_id,
            "nonce": str(uuid.uuid4()),
        }
        headers = {
            "alg": ACCEPTED_ALGORITHM,
            "kid": self._key_id,
            "typ": "JWT",
        }

        try:
            token = jwt.encode(
                payload,
                self._signing_key,
                algorithm=ACCEPTED_ALGORITHM,
                headers=headers
            )
        except Exception as e:
            log_crypto_operation(logger, "sign", ACCEPTED_ALGORITHM, key_id=self._key_id, success=False)
            raise TokenGenerationError(f"failed to sign bearer token: {e}") from e

        # 有効期限は秒単位でエンコードされるため、キャッシュ側も揃える
        cached = CachedToken(
            token=token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        )
        self._cached = cached

        log_crypto_operation(logger, "sign", ACCEPTED_ALGORITHM, key_id=self._key_id)
        logger.info(f"[Token] Generated bearer token: kid={self._key_id}, expires={cached.expires_at.isoformat()}")

        return cached
