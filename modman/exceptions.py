"""
ModMan 统一异常体系

提供分层的异常结构，支持错误代码、上下文信息和 JSON 序列化。
"""

from typing import Any, Dict, Optional
import aiohttp


class ModManError(Exception):
    """ModMan 基础异常类"""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self._get_default_code()
        self.context = context or {}

    def _get_default_code(self) -> str:
        """获取默认错误代码"""
        return "E000"

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "type": self.__class__.__name__,
        }

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class ConfigError(ModManError):
    """配置相关错误"""

    def _get_default_code(self) -> str:
        return "E100"


class ConfigValidationError(ConfigError):
    """配置验证错误"""

    def _get_default_code(self) -> str:
        return "E102"


class StateError(ModManError):
    """配置文件 / 锁文件读写错误"""

    def __init__(
        self,
        which_file: str,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code, context)
        self.which_file = which_file
        self.context.setdefault("file", which_file)

    def _get_default_code(self) -> str:
        return "E110"


class StateAbsentError(StateError):
    """文件不存在"""

    def _get_default_code(self) -> str:
        return "E111"


class StateEmptyError(StateError):
    """文件为空"""

    def _get_default_code(self) -> str:
        return "E112"


class CorruptStateError(StateError):
    """文件内容损坏或无法解析"""

    def __init__(self, which_file: str, detail: str):
        super().__init__(
            which_file,
            f"文件 '{which_file}' 已损坏: {detail}",
            context={"detail": detail},
        )
        self.detail = detail

    def _get_default_code(self) -> str:
        return "E113"


class StateWriteError(StateError):
    """写入文件失败"""

    def _get_default_code(self) -> str:
        return "E114"


class StateLockedError(StateError):
    """另一个进程正在操作同一目录"""

    def _get_default_code(self) -> str:
        return "E115"


class APIError(ModManError):
    """API 相关错误"""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        response: Optional[aiohttp.ClientResponse] = None,
    ):
        super().__init__(message, code, context)
        self.response = response
        if response:
            self.context["status_code"] = response.status
            self.context["url"] = str(response.url)

    def _get_default_code(self) -> str:
        return "E200"


class NotFoundError(APIError):
    """注册表中不存在该模组（或没有符合条件的版本）"""

    def __init__(self, mod_id: str, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"找不到模组: '{mod_id}'", **kwargs)
        self.mod_id = mod_id
        self.context.setdefault("mod_id", mod_id)

    def _get_default_code(self) -> str:
        return "E404"


class TransportError(APIError):
    """网络传输错误（连接失败、超时、异常状态码等）"""

    def _get_default_code(self) -> str:
        return "E201"


class APIRateLimitError(TransportError):
    """API 速率限制"""

    def _get_default_code(self) -> str:
        return "E429"


class APIServerError(TransportError):
    """API 服务器错误"""

    def _get_default_code(self) -> str:
        return "E503"


class ResolutionError(ModManError):
    """依赖解析错误"""

    def _get_default_code(self) -> str:
        return "E600"


class IncompatibleDependencyError(ResolutionError):
    """存在不兼容的依赖"""

    def __init__(self, mod_id: str, parent: Optional[str] = None):
        message = f"不兼容的模组: '{mod_id}'"
        if parent:
            message += f" (由 '{parent}' 声明)"
        super().__init__(message, context={"mod_id": mod_id, "parent": parent})
        self.mod_id = mod_id
        self.parent = parent

    def _get_default_code(self) -> str:
        return "E601"


class DownloadError(ModManError):
    """下载相关错误"""

    def _get_default_code(self) -> str:
        return "E300"


class DownloadNetworkError(DownloadError):
    """下载网络错误"""

    def _get_default_code(self) -> str:
        return "E301"


class DownloadChecksumError(DownloadError):
    """下载校验错误"""

    def __init__(self, mod_id: str, expected: str, actual: str):
        super().__init__(
            f"SHA512 校验失败: {mod_id}",
            context={"mod_id": mod_id, "expected": expected, "actual": actual},
        )
        self.mod_id = mod_id
        self.expected = expected
        self.actual = actual

    def _get_default_code(self) -> str:
        return "E302"


class DownloadFileError(DownloadError):
    """下载文件操作错误"""

    def _get_default_code(self) -> str:
        return "E303"


__all__ = [
    # 基础异常
    "ModManError",
    # 配置异常
    "ConfigError",
    "ConfigValidationError",
    # 状态文件异常
    "StateError",
    "StateAbsentError",
    "StateEmptyError",
    "CorruptStateError",
    "StateWriteError",
    "StateLockedError",
    # API 异常
    "APIError",
    "NotFoundError",
    "TransportError",
    "APIRateLimitError",
    "APIServerError",
    # 解析异常
    "ResolutionError",
    "IncompatibleDependencyError",
    # 下载异常
    "DownloadError",
    "DownloadNetworkError",
    "DownloadChecksumError",
    "DownloadFileError",
]
