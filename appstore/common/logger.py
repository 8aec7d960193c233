"""
appstore/common/logger.py

App Store クライアント共通のロギング設定

- LOG_LEVEL / LOG_FORMAT 環境変数でレベルと出力形式（text/json）を切り替え
- HTTP通信の詳細（ヘッダー・ボディ）はDEBUGレベルでのみ出力
- Authorizationヘッダー・Bearerトークン・秘密鍵はハンドラー側で必ずマスク
"""

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

MASK = '***MASKED***'

# 小文字で比較する
SENSITIVE_KEYS = frozenset({
    'authorization', 'token', 'private_key', 'key_content', 'secret', 'password', 'passphrase',
})

_BEARER_PATTERN = re.compile(r'(Bearer\s+)[A-Za-z0-9\-_=]+\.[A-Za-z0-9\-_=]+\.[A-Za-z0-9\-_=]+')


def mask_sensitive(data: Any) -> Any:
    """dict/listを再帰的にたどり、機密キーの値をMASKに置き換えたコピーを返す"""
    if isinstance(data, dict):
        return {
            key: MASK if str(key).lower() in SENSITIVE_KEYS else mask_sensitive(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [mask_sensitive(item) for item in data]
    return data


def mask_bearer(text: str) -> str:
    """文字列中の "Bearer <JWT>" をマスク"""
    return _BEARER_PATTERN.sub(r'\1' + MASK, text)


class SensitiveDataFilter(logging.Filter):
    """出力前にJSONメッセージの機密キーとBearerトークンをマスクするフィルター"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not isinstance(record.msg, str) or MASK in record.msg:
            return True

        if record.msg.lstrip().startswith('{'):
            try:
                record.msg = json.dumps(mask_sensitive(json.loads(record.msg)), ensure_ascii=False, indent=2)
            except json.JSONDecodeError:
                # JSONでなければ平文として扱う
                pass

        record.msg = mask_bearer(record.msg)
        return True


class StructuredFormatter(logging.Formatter):
    """text形式またはJSON形式でログを整形"""

    def __init__(self, json_format: bool = False):
        super().__init__()
        self.json_format = json_format

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        if self.json_format:
            return self._format_json(record, now)
        return f"[{now:%Y-%m-%d %H:%M:%S}] {record.levelname:8s} {record.name:30s} | {record.getMessage()}"

    def _format_json(self, record: logging.LogRecord, now: datetime) -> str:
        log_data = {
            'timestamp': now.strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        service = getattr(record, 'service_name', None)
        if service:
            log_data['service'] = service
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def _resolve_level(level: Optional[str]) -> Optional[int]:
    name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    value = getattr(logging, name, None)
    return value if isinstance(value, int) else None


def setup_logger(
    name: str,
    level: Optional[str] = None,
    json_format: bool = False,
    service_name: Optional[str] = None
) -> logging.Logger:
    """
    ロガーをセットアップ（同名ロガーへの2回目以降の呼び出しは何もしない）

    Args:
        name: ロガー名（通常は __name__）
        level: ログレベル（省略時は LOG_LEVEL、既定は INFO）
        json_format: JSON形式で出力するか（省略時は LOG_FORMAT=json で有効）
        service_name: ログに含めるサービス名

    Returns:
        設定済みのロガー
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    log_level = _resolve_level(level)
    if log_level is None:
        log_level = logging.INFO
        logger.warning(f"Invalid log level '{level}', using INFO")
    logger.setLevel(log_level)

    use_json = json_format or os.getenv('LOG_FORMAT', 'text').lower() == 'json'
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(StructuredFormatter(json_format=use_json))
    handler.addFilter(SensitiveDataFilter())
    logger.addHandler(handler)

    if service_name:
        logger.service_name = service_name

    # 親ロガーへの伝播を防止（重複出力を避ける）
    logger.propagate = False
    return logger


def get_logger(name: str, service_name: Optional[str] = None) -> logging.Logger:
    return setup_logger(name, service_name=service_name)


def log_http_request(
    logger: logging.Logger,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Optional[Any] = None
):
    """App Store Server APIへのリクエストを記録（ヘッダーとボディはDEBUGのみ）"""
    logger.info(f"HTTP Request: {method} {url}")
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(json.dumps(
            {"type": "HTTP_REQUEST", "method": method, "url": url, "headers": headers or {}, "body": body},
            ensure_ascii=False,
            default=str
        ))


def log_http_response(
    logger: logging.Logger,
    status_code: int,
    url: str,
    duration_ms: Optional[float] = None
):
    """
    App Store Server APIからのレスポンスを記録

    レスポンスボディは署名付きペイロードを含むため記録しない。
    """
    duration_str = f" ({duration_ms:.2f}ms)" if duration_ms is not None else ""
    logger.info(f"HTTP Response: {status_code} {url}{duration_str}")
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(json.dumps(
            {"type": "HTTP_RESPONSE", "status_code": status_code, "url": url, "duration_ms": duration_ms},
            ensure_ascii=False
        ))


def log_crypto_operation(
    logger: logging.Logger,
    operation: str,
    algorithm: str,
    key_id: Optional[str] = None,
    success: bool = True
):
    """
    署名・検証の結果を記録（成功はINFO、失敗はWARNING）

    Args:
        logger: ロガーインスタンス
        operation: "sign" または "verify"
        algorithm: アルゴリズム名
        key_id: 鍵ID（秘密鍵そのものは渡さない）
        success: 成功したか
    """
    status = "SUCCESS" if success else "FAILED"
    key_str = f" (key: {key_id})" if key_id else ""
    level = logging.INFO if success else logging.WARNING
    logger.log(level, f"Crypto {operation.upper()}: {algorithm}{key_str} - {status}")
