"""
appstore/common - 認証と署名付きペイロード検証の共通モジュール

- crypto: App Store Connect API キー（.p8）の読み込み
- jwt_utils: Bearerトークンの生成とキャッシュ
- cert: トラストアンカーとx5c証明書チェーンの検証
- signed_data: 署名付きペイロードの検証とデコード
- models: デコード済みクレームとAPIリクエスト/レスポンス
"""
