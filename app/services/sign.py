"""
签名编解码模块：MD5 / RSA 签名生成与验证、RSA 密钥对生成。

规范化串：过滤空值和 sign、sign_type 参数，按参数名 ASCII 排序，
以 k=v 拼接 &。MD5 在末尾拼接商户密钥；RSA 使用 SHA256withRSA。
RSA 密钥以无 PEM 头的 Base64 DER 形式交换（公钥 SPKI，私钥 PKCS8）。
"""

import base64
import binascii
import hashlib
import time

from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

SIGN_TYPE_MD5 = "MD5"
SIGN_TYPE_RSA = "RSA"

# 时间戳允许的最大偏差（秒）
TIMESTAMP_WINDOW = 300


class SignatureError(Exception):
    """签名校验失败、缺少密钥或签名类型不支持。"""

    def __init__(self, msg: str, code: int = 1004):
        super().__init__(msg)
        self.msg = msg
        self.code = code


def build_sign_content(params: dict) -> str:
    """构建待签名的规范化字符串。"""
    filtered = {
        k: v
        for k, v in params.items()
        if k not in ("sign", "sign_type") and v is not None and str(v) != ""
    }
    sorted_keys = sorted(filtered.keys())
    return "&".join(f"{k}={filtered[k]}" for k in sorted_keys)


def generate_sign(params: dict, key: str) -> str:
    """
    生成 MD5 签名。

    1. 过滤空值和 sign、sign_type 参数
    2. 按参数名 ASCII 码从小到大排序
    3. 拼接 URL 键值对（参数值不 URL 编码）
    4. 拼接商户密钥 KEY 后 MD5 加密

    返回小写 32 位十六进制签名字符串。
    """
    sign_str = build_sign_content(params) + key
    return hashlib.md5(sign_str.encode("utf-8")).hexdigest()


def verify_sign(params: dict, key: str, sign: str) -> bool:
    """验证请求签名是否正确。"""
    if not sign or not key:
        return False
    expected = generate_sign(params, key)
    return expected == str(sign).lower()


# ── RSA ───────────────────────────────────────────────────


def _load_key(key_str: str, label: str) -> RSA.RsaKey:
    """加载 RSA 密钥，支持 PEM 格式和裸 Base64 DER。"""
    key_str = (key_str or "").strip()
    if not key_str:
        raise SignatureError(f"{label}未配置")
    try:
        if key_str.startswith("-----"):
            return RSA.import_key(key_str)
        return RSA.import_key(base64.b64decode(key_str))
    except (ValueError, IndexError, TypeError, binascii.Error) as e:
        raise SignatureError(f"无法加载{label}: {e}")


def rsa_sign(params: dict, private_key: str) -> str:
    """SHA256withRSA 签名，返回 Base64 编码的签名字符串。"""
    key = _load_key(private_key, "RSA 私钥")
    h = SHA256.new(build_sign_content(params).encode("utf-8"))
    signature = pkcs1_15.new(key).sign(h)
    return base64.b64encode(signature).decode("utf-8")


def rsa_verify(params: dict, sign: str, public_key: str) -> bool:
    """
    使用商户公钥验证 RSA 签名。

    公钥缺失时抛出 SignatureError，不回退到 MD5。
    """
    key = _load_key(public_key, "商户 RSA 公钥")
    if not sign:
        return False
    h = SHA256.new(build_sign_content(params).encode("utf-8"))
    try:
        pkcs1_15.new(key).verify(h, base64.b64decode(sign))
        return True
    except (ValueError, TypeError, binascii.Error):
        return False


def generate_rsa_keypair(bits: int = 2048) -> tuple[str, str]:
    """生成 RSA 密钥对，返回 (公钥, 私钥) 的 Base64 DER 字符串。"""
    key = RSA.generate(bits)
    public_der = key.publickey().export_key(format="DER")
    private_der = key.export_key(format="DER", pkcs=8)
    return (
        base64.b64encode(public_der).decode("ascii"),
        base64.b64encode(private_der).decode("ascii"),
    )


# ── 协议版本策略 ──────────────────────────────────────────


def is_v2_request(params: dict) -> bool:
    """携带 timestamp 的请求为新版协议。"""
    return bool(params.get("timestamp"))


def resolve_sign_type(params: dict) -> str:
    """显式 sign_type 优先；否则新版协议默认 RSA，旧版默认 MD5。"""
    explicit = str(params.get("sign_type") or "").strip().upper()
    if explicit:
        if explicit not in (SIGN_TYPE_MD5, SIGN_TYPE_RSA):
            raise SignatureError(f"不支持的签名类型: {explicit}")
        return explicit
    return SIGN_TYPE_RSA if is_v2_request(params) else SIGN_TYPE_MD5


def validate_timestamp(timestamp, now: float | None = None) -> bool:
    """时间戳与当前时间相差不超过 300 秒。"""
    try:
        ts = int(str(timestamp).strip())
    except (TypeError, ValueError):
        return False
    current = int(now if now is not None else time.time())
    return abs(current - ts) <= TIMESTAMP_WINDOW


def verify_request(params: dict, api_key: str | None, rsa_public_key: str | None) -> str:
    """
    按协议版本验证商户请求签名，返回实际使用的签名类型。

    Raises:
        SignatureError: 签名缺失、错误，或要求 RSA 但商户未配置公钥。
    """
    sign = params.get("sign")
    if not sign:
        raise SignatureError("缺少签名")

    sign_type = resolve_sign_type(params)
    if sign_type == SIGN_TYPE_RSA:
        if not rsa_public_key:
            raise SignatureError("商户未配置 RSA 公钥，无法使用 RSA 签名")
        ok = rsa_verify(params, sign, rsa_public_key)
    else:
        ok = verify_sign(params, api_key or "", sign)

    if not ok:
        raise SignatureError("签名验证失败")
    return sign_type
