"""支付插件注册表：按名称注册与查找插件实例。"""

import logging

from app.plugins.base import PaymentPlugin, PluginError

logger = logging.getLogger(__name__)

_PLUGINS: dict[str, PaymentPlugin] = {}


def register_plugin(plugin: PaymentPlugin) -> PaymentPlugin:
    """注册插件；同名插件会被覆盖。"""
    if not plugin.name:
        raise ValueError("插件必须声明 name")
    if plugin.name in _PLUGINS:
        logger.warning("支付插件被覆盖: %s", plugin.name)
    _PLUGINS[plugin.name] = plugin
    return plugin


def unregister_plugin(name: str) -> None:
    _PLUGINS.pop(name, None)


def get_plugin(name: str | None) -> PaymentPlugin:
    """
    按名称获取插件。

    Raises:
        PluginError: 插件未注册。
    """
    plugin = _PLUGINS.get(name or "")
    if plugin is None:
        raise PluginError(f"支付插件 {name} 不存在")
    return plugin


def list_plugins() -> list[str]:
    return sorted(_PLUGINS)


def _register_builtin() -> None:
    from app.plugins.alipay import AlipayPlugin
    from app.plugins.epay import EpayPlugin

    register_plugin(AlipayPlugin())
    register_plugin(EpayPlugin())


_register_builtin()
