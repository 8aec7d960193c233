"""
appstore - App Store Server API クライアント

App Store Server API への認証（ES256 Bearerトークン）と、
App Storeが返却・送信する署名付きペイロード（JWS + x5c）の検証を提供します。

使用例:
    from appstore import StoreClient, StoreConfig

    config = StoreConfig.from_env()
    client = StoreClient(config)

    history = client.get_transaction_history(original_transaction_id)
    for page in history:
        transactions = client.parse_signed_transactions(page.signedTransactions)
"""

from .client import StoreClient
from .common.cert import APPLE_ROOT_CA_G3_SHA256, ChainVerifier, TrustAnchorStore
from .common.config import StoreConfig
from .common.crypto import load_signing_key
from .common.errors import (
    AppStoreAPIError,
    AppStoreError,
    ChainFailureReason,
    ChainValidationError,
    ConfigurationError,
    KeyFormatError,
    PayloadError,
    PayloadFailureReason,
    TokenGenerationError,
    VerificationError,
)
from .common.jwt_utils import TokenIssuer
from .common.models import JWSRenewalInfo, JWSTransaction, NotificationPayload
from .common.signed_data import BatchDecodeResult, SignedDataVerifier

__version__ = "1.0.0"

__all__ = [
    "StoreClient",
    "StoreConfig",
    "TokenIssuer",
    "TrustAnchorStore",
    "ChainVerifier",
    "SignedDataVerifier",
    "BatchDecodeResult",
    "load_signing_key",
    "APPLE_ROOT_CA_G3_SHA256",
    "JWSTransaction",
    "JWSRenewalInfo",
    "NotificationPayload",
    "AppStoreError",
    "AppStoreAPIError",
    "ConfigurationError",
    "KeyFormatError",
    "TokenGenerationError",
    "VerificationError",
    "ChainValidationError",
    "ChainFailureReason",
    "PayloadError",
    "PayloadFailureReason",
]
