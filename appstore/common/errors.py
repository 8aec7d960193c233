"""
appstore/common/errors.py

App Store Server API クライアントのエラー体系

- 構築時エラー（ConfigurationError / KeyFormatError）はプロセスにとって致命的
- トークン生成エラー（TokenGenerationError）は呼び出し側でリトライ可能
- 検証エラー（ChainValidationError / PayloadError）は該当ペイロードのみを拒否する
"""

from enum import Enum
from typing import Optional


class AppStoreError(Exception):
    """App Store クライアントの基底エラー"""
    pass


class ConfigurationError(AppStoreError):
    """認証情報やトラストアンカーの設定不備（構築時に発生）"""
    pass


class KeyFormatError(AppStoreError):
    """秘密鍵がPEM/PKCS#8/P-256の要件を満たさない"""
    pass


class TokenGenerationError(AppStoreError):
    """Bearerトークンの署名に失敗"""
    pass


class ChainFailureReason(str, Enum):
    """証明書チェーン検証の失敗理由"""
    MISSING_CHAIN = "missing_chain"
    MALFORMED_CERTIFICATE = "malformed_certificate"
    BROKEN_CHAIN = "broken_chain"
    EXPIRED = "expired"
    UNTRUSTED_ROOT = "untrusted_root"
    UNSUPPORTED_KEY_TYPE = "unsupported_key_type"


class PayloadFailureReason(str, Enum):
    """署名付きペイロード検証の失敗理由"""
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_CLAIMS = "malformed_claims"


class VerificationError(AppStoreError):
    """署名付きペイロードを拒否したことを示す基底エラー"""

    def __init__(self, reason: Enum, message: Optional[str] = None):
        self.reason = reason
        self.message = message or reason.value
        super().__init__(f"{reason.value}: {self.message}")


class ChainValidationError(VerificationError):
    """x5c証明書チェーンの検証失敗"""

    def __init__(self, reason: ChainFailureReason, message: Optional[str] = None):
        super().__init__(reason, message)


class PayloadError(VerificationError):
    """JWS署名またはクレームの検証失敗"""

    def __init__(self, reason: PayloadFailureReason, message: Optional[str] = None):
        super().__init__(reason, message)


class AppStoreAPIError(AppStoreError):
    """App Store Server APIの呼び出し失敗"""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        super().__init__(message)
