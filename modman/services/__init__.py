"""
ModMan 服务层

包含业务逻辑服务：API 客户端、版本匹配、依赖解析、状态同步。
"""

from modman.services.api_client import ModrinthClient, RegistryClient
from modman.services.version_matcher import VersionMatcher
from modman.services.dependency_resolver import (
    DependencyResolver,
    FailureKind,
    ResolutionFailure,
    ResolutionReport,
)
from modman.services.reconciler import ReconcileReport, StateReconciler

__all__ = [
    "ModrinthClient",
    "RegistryClient",
    "VersionMatcher",
    "DependencyResolver",
    "FailureKind",
    "ResolutionFailure",
    "ResolutionReport",
    "ReconcileReport",
    "StateReconciler",
]
