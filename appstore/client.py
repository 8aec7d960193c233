"""
appstore/client.py

App Store Server API クライアント

すべてのリクエストにES256 Bearerトークンを付与し、
レスポンスに含まれる署名付きトランザクションは証明書チェーンと署名を検証してからデコードします。

参照:
- https://developer.apple.com/documentation/appstoreserverapi
"""

import json
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ValidationError

from appstore.common.cert import ChainVerifier, TrustAnchorStore
from appstore.common.config import StoreConfig
from appstore.common.errors import AppStoreAPIError
from appstore.common.jwt_utils import TokenIssuer
from appstore.common.logger import get_logger, log_http_request, log_http_response
from appstore.common.models import (
    ConsumptionRequest,
    ExtendRenewalDateRequest,
    HistoryResponse,
    JWSTransaction,
    NotificationHistoryRequest,
    NotificationHistoryResponse,
    NotificationHistoryResponseItem,
    OrderLookupResponse,
    RefundLookupResponse,
    StatusResponse,
)
from appstore.common.signed_data import SignedDataVerifier

logger = get_logger(__name__, service_name='store_client')

HOST_SANDBOX = "https://api.storekit-sandbox.itunes.apple.com"
HOST_PRODUCTION = "https://api.storekit.itunes.apple.com"

PATH_LOOKUP = "/inApps/v1/lookup/{orderId}"
PATH_TRANSACTION_HISTORY = "/inApps/v1/history/{originalTransactionId}"
PATH_REFUND_HISTORY = "/inApps/v2/refund/lookup/{originalTransactionId}"
PATH_GET_ALL_SUBSCRIPTION_STATUS = "/inApps/v1/subscriptions/{originalTransactionId}"
PATH_CONSUMPTION_INFO = "/inApps/v1/transactions/consumption/{originalTransactionId}"
PATH_EXTEND_SUBSCRIPTION_RENEWAL_DATE = "/inApps/v1/subscriptions/extend/{originalTransactionId}"
PATH_GET_NOTIFICATION_HISTORY = "/inApps/v1/notifications/history"
PATH_REQUEST_TEST_NOTIFICATION = "/inApps/v1/notifications/test"
PATH_GET_TEST_NOTIFICATION_STATUS = "/inApps/v1/notifications/test/{testNotificationToken}"

DEFAULT_TIMEOUT_SECONDS = 30.0

# ページ取得の間隔（秒）
PAGINATION_INTERVAL_SECONDS = 0.01

USER_AGENT = "App Store Client"


class StoreClient:
    """
    App Store Server API クライアント

    使用例:
        client = StoreClient(StoreConfig.from_env())
        statuses = client.get_all_subscription_statuses("1000000000000000")
    """

    def __init__(
        self,
        config: StoreConfig,
        anchors: Optional[TrustAnchorStore] = None,
        http_client: Optional[httpx.Client] = None,
        token_issuer: Optional[TokenIssuer] = None
    ):
        """
        Args:
            config: 認証情報
            anchors: 信頼するルート証明書（デフォルト: config.root_certificatesから読み込み）
            http_client: 利用するHTTPクライアント（デフォルト: タイムアウト30秒のhttpx.Client）
            token_issuer: Bearerトークン発行クラス（デフォルト: configから生成）

        Raises:
            ConfigurationError: トラストアンカーが無い場合
            KeyFormatError: 秘密鍵が不正な場合
        """
        self.config = config
        self.token = token_issuer or TokenIssuer(config)
        if anchors is None:
            anchors = TrustAnchorStore.load_anchors(*config.root_certificates)
        self.verifier = SignedDataVerifier(ChainVerifier(anchors))
        self._http = http_client or httpx.Client(timeout=DEFAULT_TIMEOUT_SECONDS)
        self.host = HOST_SANDBOX if config.sandbox else HOST_PRODUCTION

    def close(self) -> None:
        """HTTPクライアントをクローズ"""
        self._http.close()

    def __enter__(self) -> "StoreClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _url(self, path: str, **params: str) -> str:
        for name, value in params.items():
            path = path.replace("{" + name + "}", value)
        return self.host + path

    def do(
        self,
        method: str,
        url: str,
        json_body: Optional[Any] = None,
        params: Optional[Dict[str, str]] = None
    ) -> Tuple[int, bytes]:
        """
        認証付きでHTTPリクエストを実行

        Args:
            method: HTTPメソッド
            url: リクエストURL
            json_body: リクエストボディ（JSONシリアライズ可能な値）
            params: クエリパラメータ

        Returns:
            Tuple[ステータスコード, レスポンスボディ]

        Raises:
            TokenGenerationError: トークン生成に失敗した場合
            AppStoreAPIError: 通信に失敗した場合
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": self.token.authorization_header(),
            "User-Agent": USER_AGENT,
        }

        log_http_request(logger, method, url, headers=headers, body=json_body)
        start_time = time.time()

        try:
            response = self._http.request(
                method,
                url,
                headers=headers,
                params=params,
                content=json.dumps(json_body).encode('utf-8') if json_body is not None else None
            )
        except httpx.HTTPError as e:
            logger.error(f"[StoreClient] HTTP request failed: {method} {url}: {e}")
            raise AppStoreAPIError(f"appstore http client error: {e}", url=url) from e

        duration_ms = (time.time() - start_time) * 1000
        log_http_response(logger, response.status_code, url, duration_ms=duration_ms)

        return response.status_code, response.content

    def _get_json(
        self,
        method: str,
        url: str,
        response_model: type,
        json_body: Optional[Any] = None,
        params: Optional[Dict[str, str]] = None
    ) -> BaseModel:
        status_code, body = self.do(method, url, json_body=json_body, params=params)
        if status_code != httpx.codes.OK:
            raise AppStoreAPIError(
                f"appstore api: {url} return status code {status_code}",
                status_code=status_code,
                url=url
            )
        try:
            return response_model.model_validate_json(body)
        except ValidationError as e:
            raise AppStoreAPIError(f"appstore api: {url} returned an invalid body: {e}", status_code=status_code, url=url) from e

    def _next_cursor(self, url: str, cursor: Optional[str], name: str) -> str:
        if not cursor:
            raise AppStoreAPIError(f"appstore api: {url} returned hasMore without {name}", url=url)
        return cursor

    def get_all_subscription_statuses(self, original_transaction_id: str) -> StatusResponse:
        """
        全購読のステータスを取得

        参照: https://developer.apple.com/documentation/appstoreserverapi/get_all_subscription_statuses
        """
        url = self._url(PATH_GET_ALL_SUBSCRIPTION_STATUS, originalTransactionId=original_transaction_id)
        return self._get_json("GET", url, StatusResponse)

    def lookup_order_id(self, order_id: str) -> OrderLookupResponse:
        """
        注文IDからトランザクションを検索

        参照: https://developer.apple.com/documentation/appstoreserverapi/look_up_order_id
        """
        url = self._url(PATH_LOOKUP, orderId=order_id)
        return self._get_json("GET", url, OrderLookupResponse)

    def get_transaction_history(
        self,
        original_transaction_id: str,
        query: Optional[Dict[str, str]] = None
    ) -> List[HistoryResponse]:
        """
        トランザクション履歴を全ページ取得

        Args:
            original_transaction_id: 元のトランザクションID
            query: 追加のクエリパラメータ（sort, productId等）

        Returns:
            List[HistoryResponse]: 各ページのレスポンス

        参照: https://developer.apple.com/documentation/appstoreserverapi/get_transaction_history
        """
        url = self._url(PATH_TRANSACTION_HISTORY, originalTransactionId=original_transaction_id)
        params = dict(query or {})

        responses = []
        while True:
            page = self._get_json("GET", url, HistoryResponse, params=params)
            responses.append(page)
            if not page.hasMore:
                break
            params["revision"] = self._next_cursor(url, page.revision, "revision")
            time.sleep(PAGINATION_INTERVAL_SECONDS)

        return responses

    def get_refund_history(self, original_transaction_id: str) -> List[RefundLookupResponse]:
        """
        返金履歴を全ページ取得

        参照: https://developer.apple.com/documentation/appstoreserverapi/get_refund_history
        """
        url = self._url(PATH_REFUND_HISTORY, originalTransactionId=original_transaction_id)
        params: Dict[str, str] = {}

        responses = []
        while True:
            page = self._get_json("GET", url, RefundLookupResponse, params=params or None)
            responses.append(page)
            if not page.hasMore:
                break
            params = {"revision": self._next_cursor(url, page.revision, "revision")}
            time.sleep(PAGINATION_INTERVAL_SECONDS)

        return responses

    def send_consumption_info(self, original_transaction_id: str, body: ConsumptionRequest) -> int:
        """
        消費情報を送信

        参照: https://developer.apple.com/documentation/appstoreserverapi/send_consumption_information
        """
        url = self._url(PATH_CONSUMPTION_INFO, originalTransactionId=original_transaction_id)
        status_code, _ = self.do("PUT", url, json_body=body.model_dump(exclude_none=True))
        return status_code

    def extend_subscription_renewal_date(self, original_transaction_id: str, body: ExtendRenewalDateRequest) -> int:
        """
        購読の更新日を延長

        参照: https://developer.apple.com/documentation/appstoreserverapi/extend_a_subscription_renewal_date
        """
        url = self._url(PATH_EXTEND_SUBSCRIPTION_RENEWAL_DATE, originalTransactionId=original_transaction_id)
        status_code, _ = self.do("PUT", url, json_body=body.model_dump(exclude_none=True))
        return status_code

    def get_notification_history(self, body: NotificationHistoryRequest) -> List[NotificationHistoryResponseItem]:
        """
        通知履歴を全ページ取得

        通知履歴は2022年6月6日以降のみ取得可能。startDateはそれ以降を指定すること。

        参照: https://developer.apple.com/documentation/appstoreserverapi/get_notification_history
        """
        url = self._url(PATH_GET_NOTIFICATION_HISTORY)
        payload = body.model_dump(exclude_none=True)
        params: Dict[str, str] = {}

        items: List[NotificationHistoryResponseItem] = []
        while True:
            page = self._get_json("POST", url, NotificationHistoryResponse, json_body=payload, params=params or None)
            items.extend(page.notificationHistory)
            if not page.hasMore:
                break
            params = {"paginationToken": self._next_cursor(url, page.paginationToken, "paginationToken")}
            time.sleep(PAGINATION_INTERVAL_SECONDS)

        return items

    def request_test_notification(self) -> Tuple[int, bytes]:
        """
        テスト通知の送信を依頼

        参照: https://developer.apple.com/documentation/appstoreserverapi/request_a_test_notification
        """
        return self.do("POST", self._url(PATH_REQUEST_TEST_NOTIFICATION))

    def get_test_notification_status(self, test_notification_token: str) -> Tuple[int, bytes]:
        """
        テスト通知の送信結果を取得

        参照: https://developer.apple.com/documentation/appstoreserverapi/get_test_notification_status
        """
        url = self._url(PATH_GET_TEST_NOTIFICATION_STATUS, testNotificationToken=test_notification_token)
        return self.do("GET", url)

    def parse_signed_transactions(self, transactions: List[str]) -> List[JWSTransaction]:
        """
        署名付きトランザクションを検証してデコード

        検証に失敗したものは結果から除外される。
        """
        return self.verifier.decode_all(transactions, JWSTransaction)
