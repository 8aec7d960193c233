"""
appstore/common/crypto.py

App Store Connect API キー（.p8）の読み込み

.p8ファイルはPKCS#8形式でPEMエンコードされたP-256（SECP256R1）の秘密鍵です。
"""

import re
from typing import Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from appstore.common.errors import KeyFormatError

PKCS8_PEM_LABEL = "PRIVATE KEY"

_PEM_HEADER = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----")


def load_signing_key(key_content: Union[bytes, str]) -> ec.EllipticCurvePrivateKey:
    """
    PEM/PKCS#8形式の秘密鍵を読み込み

    Args:
        key_content: .p8ファイルの内容

    Returns:
        ec.EllipticCurvePrivateKey: P-256の秘密鍵

    Raises:
        KeyFormatError: PEMでない、PKCS#8でない、またはP-256のEC鍵でない場合
    """
    if isinstance(key_content, str):
        key_content = key_content.encode('utf-8')

    if not key_content or not key_content.strip():
        raise KeyFormatError("private key content is empty")

    match = _PEM_HEADER.search(key_content)
    if match is None:
        raise KeyFormatError("private key is not PEM encoded")

    label = match.group(1).decode('ascii')
    if label != PKCS8_PEM_LABEL:
        raise KeyFormatError(f"private key must be PKCS#8 ('{PKCS8_PEM_LABEL}'), got '{label}'")

    try:
        private_key = serialization.load_pem_private_key(
            key_content,
            password=None,
            backend=default_backend()
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyFormatError(f"failed to parse PKCS#8 private key: {e}") from e

    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise KeyFormatError(f"private key must be an EC key, got {type(private_key).__name__}")

    if not isinstance(private_key.curve, ec.SECP256R1):
        raise KeyFormatError(f"private key must be on P-256, got {private_key.curve.name}")

    return private_key
