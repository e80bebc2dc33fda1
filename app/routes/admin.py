"""
管理后台路由：认证（登录）、商户管理、通道、支付组与轮询组、系统设置。

所有写操作完成后配置快照立即失效。
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.database import get_db
from app.plugins.base import PluginError
from app.plugins.registry import list_plugins
from app.services import channel_service
from app.services.auth import authenticate, get_current_admin, hash_password, verify_password
from app.services.callback_service import CallbackService
from app.services.merchant_service import MerchantError, MerchantService
from app.services.order_service import OrderService
from app.services.platform_config import (
    SETTING_KEYS,
    PlatformConfigError,
    get_config,
    save_pay_group,
    save_polling_group,
    set_config,
)

router = APIRouter(prefix="/v1/admin")


class LoginRequest(BaseModel):
    username: str
    password: str


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。

    成功返回 {code: 1, token: "..."}，失败返回 {code: -1, msg: "..."}。
    """
    try:
        result = authenticate(body.username, body.password)
        return JSONResponse(content=result)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


# ── 商户管理 ────────────────────────────────────────────────


class CreateMerchantRequest(BaseModel):
    username: str
    email: str
    fee_rate: str | None = None
    fee_rates: dict | None = None
    fee_payer: str = "merchant"
    pay_group_id: int | None = None


class UpdateMerchantRequest(BaseModel):
    action: str  # "pause" / "restore" / "reset_key"


class DomainRequest(BaseModel):
    domain: str
    status: str = "approved"


@router.get("/merchants")
async def merchant_list(admin: dict = Depends(get_current_admin)):
    svc = MerchantService()
    return JSONResponse(content={"code": 1, "merchants": svc.list_merchants()})


@router.post("/merchants")
async def create_merchant(body: CreateMerchantRequest, admin: dict = Depends(get_current_admin)):
    """注册商户（待激活）。"""
    if body.fee_payer not in ("merchant", "buyer"):
        return JSONResponse(content={"code": -1, "msg": "fee_payer 只能为 merchant 或 buyer"})
    svc = MerchantService()
    try:
        m = svc.create_merchant(
            body.username, body.email,
            fee_rate=body.fee_rate,
            fee_rates=body.fee_rates,
            fee_payer=body.fee_payer,
            pay_group_id=body.pay_group_id,
        )
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={
        "code": 1,
        "merchant": {"id": m.id, "username": m.username, "email": m.email, "status": m.status},
    })


@router.post("/merchants/{merchant_id}/activate")
async def activate_merchant(merchant_id: int, admin: dict = Depends(get_current_admin)):
    """激活商户，返回商户号、MD5 密钥和 RSA 密钥对。私钥只在此处明文返回。"""
    svc = MerchantService()
    try:
        m = svc.activate(merchant_id)
    except MerchantError as e:
        return JSONResponse(content={"code": -1, "msg": e.msg})
    return JSONResponse(content={
        "code": 1,
        "merchant": {
            "id": m.id,
            "pid": m.pid,
            "key": m.api_key,
            "status": m.status,
            "rsa_public_key": m.rsa_public_key,
            "rsa_private_key": svc.get_private_key(m),
        },
    })


@router.put("/merchants/{merchant_id}")
async def update_merchant(
    merchant_id: int, body: UpdateMerchantRequest, admin: dict = Depends(get_current_admin)
):
    """暂停 / 恢复商户，或重置 MD5 密钥。"""
    svc = MerchantService()
    try:
        if body.action == "pause":
            svc.pause(merchant_id)
            return JSONResponse(content={"code": 1, "msg": "商户已暂停"})
        elif body.action == "restore":
            svc.restore(merchant_id)
            return JSONResponse(content={"code": 1, "msg": "商户已恢复"})
        elif body.action == "reset_key":
            new_key = svc.reset_key(merchant_id)
            return JSONResponse(content={"code": 1, "msg": "密钥已重置", "key": new_key})
        else:
            return JSONResponse(content={"code": -1, "msg": f"未知操作: {body.action}"})
    except MerchantError as e:
        return JSONResponse(content={"code": -1, "msg": e.msg})


@router.post("/merchants/{merchant_id}/domains")
async def add_merchant_domain(
    merchant_id: int, body: DomainRequest, admin: dict = Depends(get_current_admin)
):
    """添加回调域名白名单。"""
    try:
        domain_id = MerchantService().add_domain(merchant_id, body.domain, body.status)
    except MerchantError as e:
        return JSONResponse(content={"code": -1, "msg": e.msg})
    return JSONResponse(content={"code": 1, "id": domain_id})


# ── 支付通道 ────────────────────────────────────────────────


class ChannelRequest(BaseModel):
    channel_name: str
    plugin_name: str
    pay_type: str
    min_amount: str = "0"
    max_amount: str = "0"
    status: int = 1
    priority: int = 0
    config: dict = {}


class ChannelStatusRequest(BaseModel):
    status: int


@router.get("/channels")
async def channel_list(admin: dict = Depends(get_current_admin)):
    channels = [
        {
            "id": c.id,
            "channel_name": c.channel_name,
            "plugin_name": c.plugin_name,
            "pay_type": c.pay_type,
            "min_amount": str(c.min_amount),
            "max_amount": str(c.max_amount),
            "status": c.status,
        }
        for c in channel_service.list_channels()
    ]
    return JSONResponse(content={"code": 1, "channels": channels, "plugins": list_plugins()})


@router.post("/channels")
@router.put("/channels/{channel_id}")
async def save_channel(
    body: ChannelRequest,
    channel_id: int | None = None,
    admin: dict = Depends(get_current_admin),
):
    """新增（POST）或修改（PUT）通道。"""
    try:
        saved_id = channel_service.save_channel(
            body.channel_name, body.plugin_name, body.pay_type,
            min_amount=body.min_amount,
            max_amount=body.max_amount,
            status=body.status,
            priority=body.priority,
            config=body.config,
            channel_id=channel_id,
        )
    except channel_service.ChannelConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    except PluginError as e:
        return JSONResponse(content={"code": -1, "msg": e.msg})
    return JSONResponse(content={"code": 1, "id": saved_id})


@router.post("/channels/{channel_id}/status")
async def channel_status(
    channel_id: int, body: ChannelStatusRequest, admin: dict = Depends(get_current_admin)
):
    """启用或关闭通道（自动关闭的通道在此重新启用）。"""
    if not channel_service.set_channel_status(channel_id, body.status):
        return JSONResponse(status_code=404, content={"code": -1, "msg": "通道不存在"})
    return JSONResponse(content={"code": 1, "msg": "通道已启用" if body.status else "通道已关闭"})


# ── 支付组 / 轮询组 ────────────────────────────────────────


class PayGroupRequest(BaseModel):
    name: str
    config: dict
    is_default: bool = False


class PollingGroupRequest(BaseModel):
    name: str
    channels: list[dict]
    mode: int = 0
    status: int = 1


@router.post("/pay-groups")
@router.put("/pay-groups/{group_id}")
async def save_pay_group_route(
    body: PayGroupRequest,
    group_id: int | None = None,
    admin: dict = Depends(get_current_admin),
):
    try:
        saved_id = save_pay_group(body.name, body.config, body.is_default, group_id)
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "id": saved_id})


@router.post("/polling-groups")
@router.put("/polling-groups/{group_id}")
async def save_polling_group_route(
    body: PollingGroupRequest,
    group_id: int | None = None,
    admin: dict = Depends(get_current_admin),
):
    try:
        saved_id = save_polling_group(body.name, body.channels, body.mode, body.status, group_id)
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "id": saved_id})


# ── 订单 ────────────────────────────────────────────────────


@router.post("/orders/{trade_no}/renotify")
async def renotify_order(trade_no: str, admin: dict = Depends(get_current_admin)):
    """重新发送商户通知（仅已支付订单）。"""
    order = OrderService().get_order(trade_no)
    if order is None:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})
    if order.status != 1:
        return JSONResponse(content={"code": -1, "msg": "仅已支付订单可发送通知"})
    if not order.notify_url:
        return JSONResponse(content={"code": -1, "msg": "该订单未配置通知地址"})

    if CallbackService().send_notify(order.id):
        return JSONResponse(content={"code": 1, "msg": "通知发送成功"})
    return JSONResponse(content={"code": -1, "msg": "通知发送失败，请查看通知日志"})


# ── 系统设置 ────────────────────────────────────────────────


class SettingsRequest(BaseModel):
    settings: dict[str, str | None]


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


@router.get("/settings")
async def settings_page(admin: dict = Depends(get_current_admin)):
    return JSONResponse(content={
        "code": 1,
        "settings": {key: get_config(key) for key in SETTING_KEYS},
    })


@router.post("/settings")
async def save_settings(body: SettingsRequest, admin: dict = Depends(get_current_admin)):
    """保存系统参数，只接受已知的配置项。"""
    unknown = [k for k in body.settings if k not in SETTING_KEYS]
    if unknown:
        return JSONResponse(content={"code": -1, "msg": f"未知配置项: {', '.join(unknown)}"})
    for key, value in body.settings.items():
        set_config(key, value)
    return JSONResponse(content={"code": 1, "msg": "设置已保存"})


@router.post("/settings/change-password")
async def change_password_route(
    body: ChangePasswordRequest,
    admin: dict = Depends(get_current_admin),
):
    """修改管理员密码。"""
    username = admin.get("sub")
    if not username:
        return JSONResponse(content={"code": -1, "msg": "无法识别当前用户"})

    db = get_db()
    try:
        row = db.execute(
            "SELECT id, password_hash FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not row:
            return JSONResponse(content={"code": -1, "msg": "用户不存在"})

        if not verify_password(body.old_password, row["password_hash"]):
            return JSONResponse(content={"code": -1, "msg": "原密码错误"})

        if len(body.new_password) < 6:
            return JSONResponse(content={"code": -1, "msg": "新密码长度不能少于6位"})

        db.execute(
            "UPDATE admin SET password_hash = ? WHERE id = ?",
            (hash_password(body.new_password), row["id"]),
        )
        db.commit()
        return JSONResponse(content={"code": 1, "msg": "密码修改成功"})
    finally:
        db.close()
