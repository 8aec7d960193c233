"""
appstore/common/config.py

App Store Server API の接続設定

App Store Connect の「Keys」ページで発行した API キーの情報と、
署名付きペイロード検証用のルート証明書を保持します。
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from appstore.common.errors import ConfigurationError

# App Storeが受け付けるトークン有効期限の上限
MAX_TOKEN_LIFETIME = timedelta(minutes=60)
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=20)

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StoreConfig:
    """
    App Store Server API 認証情報

    Attributes:
        key_content: .p8ファイルの内容（PKCS#8 PEM）
        key_id: 秘密鍵のID（例: 2X9R4HXF34）
        issuer: Issuer ID（例: 57246542-96fe-1a63-e053-0824d011072a）
        bundle_id: アプリのバンドルID
        sandbox: Sandbox環境を使用するか（デフォルト: Production）
        root_certificates: 信頼するルート証明書（DERまたはPEM）
        token_lifetime: Bearerトークンの有効期間
    """
    key_content: bytes
    key_id: str
    issuer: str
    bundle_id: str
    sandbox: bool = False
    root_certificates: Tuple[bytes, ...] = field(default_factory=tuple)
    token_lifetime: timedelta = DEFAULT_TOKEN_LIFETIME

    def __post_init__(self):
        for name in ("key_id", "issuer", "bundle_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigurationError(f"{name} is required")

        if not self.key_content:
            raise ConfigurationError("key_content is required")

        if self.token_lifetime <= timedelta(0) or self.token_lifetime > MAX_TOKEN_LIFETIME:
            raise ConfigurationError(
                f"token_lifetime must be within (0, {MAX_TOKEN_LIFETIME}], got {self.token_lifetime}"
            )

        # リストで渡された場合もイミュータブルに保持する
        object.__setattr__(self, "root_certificates", tuple(self.root_certificates))

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """
        環境変数から設定を読み込み

        環境変数:
            APPSTORE_KEY_ID: 秘密鍵のID（必須）
            APPSTORE_ISSUER_ID: Issuer ID（必須）
            APPSTORE_BUNDLE_ID: バンドルID（必須）
            APPSTORE_PRIVATE_KEY_PATH: .p8ファイルのパス
            APPSTORE_PRIVATE_KEY: .p8ファイルの内容（PATHが未指定の場合）
            APPSTORE_SANDBOX: Sandbox環境を使用するか（true/false、デフォルト: false）
            APPSTORE_ROOT_CERT_PATHS: ルート証明書のパス（os.pathsep区切り）
            APPSTORE_TOKEN_LIFETIME_MINUTES: トークン有効期間（分、デフォルト: 20）

        Returns:
            StoreConfig: 設定

        Raises:
            ConfigurationError: 必須の値が欠けている、またはファイルが読めない場合
        """
        key_content = _read_private_key(
            os.getenv("APPSTORE_PRIVATE_KEY_PATH"),
            os.getenv("APPSTORE_PRIVATE_KEY")
        )

        lifetime_raw = os.getenv("APPSTORE_TOKEN_LIFETIME_MINUTES")
        token_lifetime = DEFAULT_TOKEN_LIFETIME
        if lifetime_raw:
            try:
                token_lifetime = timedelta(minutes=int(lifetime_raw))
            except ValueError:
                raise ConfigurationError(
                    f"APPSTORE_TOKEN_LIFETIME_MINUTES must be an integer, got '{lifetime_raw}'"
                )

        return cls(
            key_content=key_content,
            key_id=os.getenv("APPSTORE_KEY_ID", ""),
            issuer=os.getenv("APPSTORE_ISSUER_ID", ""),
            bundle_id=os.getenv("APPSTORE_BUNDLE_ID", ""),
            sandbox=os.getenv("APPSTORE_SANDBOX", "false").strip().lower() in _TRUE_VALUES,
            root_certificates=tuple(_read_files(_split_paths(os.getenv("APPSTORE_ROOT_CERT_PATHS", "")))),
            token_lifetime=token_lifetime,
        )


def _split_paths(value: str) -> List[str]:
    return [p for p in value.split(os.pathsep) if p.strip()]


def _read_files(paths: List[str]) -> List[bytes]:
    blobs = []
    for path in paths:
        try:
            blobs.append(Path(path).read_bytes())
        except OSError as e:
            raise ConfigurationError(f"failed to read certificate file {path}: {e}") from e
    return blobs


def _read_private_key(path: Optional[str], inline: Optional[str]) -> bytes:
    if path:
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise ConfigurationError(f"failed to read private key file {path}: {e}") from e
    if inline:
        return inline.encode("utf-8")
    raise ConfigurationError("APPSTORE_PRIVATE_KEY_PATH or APPSTORE_PRIVATE_KEY is required")
