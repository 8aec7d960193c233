"""
appstore/common/models.py

App Store Server API の型定義（Pydanticモデル）

- 署名付きペイロードのデコード済みクレーム（JWSTransaction / JWSRenewalInfo / NotificationPayload）
- APIリクエスト/レスポンス

フィールド名はApp Storeのワイヤー形式（camelCase）のまま保持します。
すべての任意フィールドはOptionalで、未知のフィールドは無視されます。
日時はUNIXエポックからのミリ秒です。

参照:
- https://developer.apple.com/documentation/appstoreserverapi
- https://developer.apple.com/documentation/appstoreservernotifications
"""

from typing import List, Optional

from pydantic import BaseModel, Field


# ========================================
# デコード済みクレーム
# ========================================

class JWSTransaction(BaseModel):
    """
    署名付きトランザクション情報（JWSTransactionDecodedPayload）

    参照: https://developer.apple.com/documentation/appstoreserverapi/jwstransactiondecodedpayload
    """
    transactionId: Optional[str] = Field(None, description="トランザクションID")
    originalTransactionId: Optional[str] = Field(None, description="元のトランザクションID")
    webOrderLineItemId: Optional[str] = Field(None, description="購読の購入イベントID")
    bundleId: Optional[str] = Field(None, description="バンドルID")
    productId: Optional[str] = Field(None, description="プロダクトID")
    subscriptionGroupIdentifier: Optional[str] = Field(None, description="購読グループID")
    purchaseDate: Optional[int] = Field(None, description="購入日時")
    originalPurchaseDate: Optional[int] = Field(None, description="元の購入日時")
    expiresDate: Optional[int] = Field(None, description="購読の有効期限")
    quantity: Optional[int] = Field(None, description="購入数")
    type: Optional[str] = Field(None, description="アプリ内課金の種類")
    appAccountToken: Optional[str] = Field(None, description="アプリが設定したUUID")
    inAppOwnershipType: Optional[str] = Field(None, description="購入者かファミリー共有か")
    signedDate: Optional[int] = Field(None, description="JWS署名日時")
    revocationReason: Optional[int] = Field(None, description="返金・取り消し理由")
    revocationDate: Optional[int] = Field(None, description="返金・取り消し日時")
    isUpgraded: Optional[bool] = Field(None, description="上位の購読にアップグレード済みか")
    offerType: Optional[int] = Field(None, description="オファーの種類")
    offerIdentifier: Optional[str] = Field(None, description="オファーID")
    environment: Optional[str] = Field(None, description="サーバー環境（Sandbox/Production）")
    storefront: Optional[str] = Field(None, description="ストアフロントの国コード")
    storefrontId: Optional[str] = Field(None, description="ストアフロントID")
    transactionReason: Optional[str] = Field(None, description="購入理由（PURCHASE/RENEWAL）")
    price: Optional[int] = Field(None, description="価格（ミリ単位）")
    currency: Optional[str] = Field(None, description="ISO 4217通貨コード")
    offerDiscountType: Optional[str] = Field(None, description="オファーの支払いモード")


class JWSRenewalInfo(BaseModel):
    """
    署名付き購読更新情報（JWSRenewalInfoDecodedPayload）

    参照: https://developer.apple.com/documentation/appstoreserverapi/jwsrenewalinfodecodedpayload
    """
    autoRenewProductId: Optional[str] = Field(None, description="次回更新時のプロダクトID")
    autoRenewStatus: Optional[int] = Field(None, description="自動更新ステータス")
    expirationIntent: Optional[int] = Field(None, description="購読期限切れの理由")
    gracePeriodExpiresDate: Optional[int] = Field(None, description="猶予期間の終了日時")
    isInBillingRetryPeriod: Optional[bool] = Field(None, description="課金リトライ期間中か")
    offerIdentifier: Optional[str] = Field(None, description="オファーID")
    offerType: Optional[int] = Field(None, description="オファーの種類")
    originalTransactionId: Optional[str] = Field(None, description="元のトランザクションID")
    priceIncreaseStatus: Optional[int] = Field(None, description="値上げへの同意状況")
    productId: Optional[str] = Field(None, description="プロダクトID")
    recentSubscriptionStartDate: Optional[int] = Field(None, description="直近の購読開始日時")
    renewalDate: Optional[int] = Field(None, description="次回更新日時")
    signedDate: Optional[int] = Field(None, description="JWS署名日時")
    environment: Optional[str] = Field(None, description="サーバー環境（Sandbox/Production）")


class NotificationData(BaseModel):
    """通知に含まれるアプリ・トランザクション情報"""
    appAppleId: Optional[int] = Field(None, description="App StoreのアプリID")
    bundleId: Optional[str] = Field(None, description="バンドルID")
    bundleVersion: Optional[str] = Field(None, description="ビルドバージョン")
    environment: Optional[str] = Field(None, description="サーバー環境")
    signedTransactionInfo: Optional[str] = Field(None, description="署名付きトランザクション情報（JWS）")
    signedRenewalInfo: Optional[str] = Field(None, description="署名付き購読更新情報（JWS）")
    status: Optional[int] = Field(None, description="購読ステータス")


class NotificationSummary(BaseModel):
    """購読更新日延長リクエストの集計"""
    requestIdentifier: Optional[str] = Field(None, description="リクエストID")
    environment: Optional[str] = Field(None, description="サーバー環境")
    appAppleId: Optional[int] = Field(None, description="App StoreのアプリID")
    bundleId: Optional[str] = Field(None, description="バンドルID")
    productId: Optional[str] = Field(None, description="プロダクトID")
    storefrontCountryCodes: Optional[List[str]] = Field(None, description="対象ストアフロント")
    succeededCount: Optional[int] = Field(None, description="成功件数")
    failedCount: Optional[int] = Field(None, description="失敗件数")


class NotificationPayload(BaseModel):
    """
    App Store Server Notifications V2 のデコード済みペイロード（responseBodyV2DecodedPayload）

    data内のsignedTransactionInfo/signedRenewalInfoは署名付きのままで、
    必要に応じて個別に検証・デコードする。
    """
    notificationType: Optional[str] = Field(None, description="通知の種類")
    subtype: Optional[str] = Field(None, description="通知のサブタイプ")
    notificationUUID: Optional[str] = Field(None, description="通知ID")
    version: Optional[str] = Field(None, description="通知バージョン")
    signedDate: Optional[int] = Field(None, description="JWS署名日時")
    data: Optional[NotificationData] = Field(None, description="アプリ・トランザクション情報")
    summary: Optional[NotificationSummary] = Field(None, description="延長リクエストの集計")


# ========================================
# APIレスポンス
# ========================================

class LastTransactionsItem(BaseModel):
    """購読ごとの最新トランザクション"""
    originalTransactionId: Optional[str] = None
    status: Optional[int] = None
    signedTransactionInfo: Optional[str] = None
    signedRenewalInfo: Optional[str] = None


class SubscriptionGroupIdentifierItem(BaseModel):
    """購読グループごとのステータス"""
    subscriptionGroupIdentifier: Optional[str] = None
    lastTransactions: List[LastTransactionsItem] = Field(default_factory=list)


class StatusResponse(BaseModel):
    """Get All Subscription Statuses のレスポンス"""
    environment: Optional[str] = None
    appAppleId: Optional[int] = None
    bundleId: Optional[str] = None
    data: List[SubscriptionGroupIdentifierItem] = Field(default_factory=list)


class OrderLookupResponse(BaseModel):
    """Look Up Order ID のレスポンス（status: 0=有効, 1=無効）"""
    status: Optional[int] = None
    signedTransactions: List[str] = Field(default_factory=list)


class HistoryResponse(BaseModel):
    """Get Transaction History のレスポンス（1ページ分）"""
    revision: Optional[str] = None
    bundleId: Optional[str] = None
    appAppleId: Optional[int] = None
    environment: Optional[str] = None
    hasMore: bool = False
    signedTransactions: List[str] = Field(default_factory=list)


class RefundLookupResponse(BaseModel):
    """Get Refund History のレスポンス（1ページ分）"""
    signedTransactions: List[str] = Field(default_factory=list)
    revision: Optional[str] = None
    hasMore: bool = False


class SendAttemptItem(BaseModel):
    """通知の送信試行結果"""
    attemptDate: Optional[int] = None
    sendAttemptResult: Optional[str] = None


class NotificationHistoryResponseItem(BaseModel):
    """通知履歴の1件"""
    signedPayload: Optional[str] = None
    sendAttempts: List[SendAttemptItem] = Field(default_factory=list)


class NotificationHistoryResponse(BaseModel):
    """Get Notification History のレスポンス（1ページ分）"""
    paginationToken: Optional[str] = None
    hasMore: bool = False
    notificationHistory: List[NotificationHistoryResponseItem] = Field(default_factory=list)


# ========================================
# APIリクエスト
# ========================================

class ConsumptionRequest(BaseModel):
    """Send Consumption Information のリクエストボディ"""
    accountTenure: Optional[int] = None
    appAccountToken: Optional[str] = None
    consumptionStatus: Optional[int] = None
    customerConsented: Optional[bool] = None
    deliveryStatus: Optional[int] = None
    lifetimeDollarsPurchased: Optional[int] = None
    lifetimeDollarsRefunded: Optional[int] = None
    platform: Optional[int] = None
    playTime: Optional[int] = None
    sampleContentProvided: Optional[bool] = None
    userStatus: Optional[int] = None


class ExtendRenewalDateRequest(BaseModel):
    """Extend a Subscription Renewal Date のリクエストボディ"""
    extendByDays: int = Field(..., description="延長日数（最大90日）")
    extendReasonCode: int = Field(..., description="延長理由コード")
    requestIdentifier: str = Field(..., description="リクエストID（UUID）")


class NotificationHistoryRequest(BaseModel):
    """
    Get Notification History のリクエストボディ

    通知履歴は2022年6月6日以降のみ取得可能。
    """
    startDate: int = Field(..., description="開始日時（ミリ秒）")
    endDate: int = Field(..., description="終了日時（ミリ秒）")
    notificationType: Optional[str] = None
    notificationSubtype: Optional[str] = None
    onlyFailures: Optional[bool] = None
    transactionId: Optional[str] = None
