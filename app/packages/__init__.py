"""业务包注册中心。

每个业务包在子目录的 ``__init__`` 中导出一个 ``AppPackage``；主应用通过
``APP_ACTIVE_PACKAGE`` 选择挂载哪一个，默认是项目文件树 ``workspace``。
"""

from __future__ import annotations

import os

from . import workspace
from .types import AppPackage

DEFAULT_PACKAGE = workspace.package.name
PACKAGE_REGISTRY: dict[str, AppPackage] = {pkg.name: pkg for pkg in (workspace.package,)}


def get_active_package(name: str | None = None) -> AppPackage:
    """返回指定名称的业务包，未指定时读取 ``APP_ACTIVE_PACKAGE``。"""
    selected = name or os.getenv("APP_ACTIVE_PACKAGE") or DEFAULT_PACKAGE
    package = PACKAGE_REGISTRY.get(selected)
    if package is None:
        choices = ", ".join(sorted(PACKAGE_REGISTRY))
        raise RuntimeError(f"未知业务包 '{selected}'，可选：{choices}")
    return package


__all__ = ["DEFAULT_PACKAGE", "PACKAGE_REGISTRY", "get_active_package"]
