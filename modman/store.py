"""
持久化存储

负责配置文件 (modman.toml) 与锁文件 (modman.lock) 的读写。
读取时区分 "不存在"、"为空"、"已损坏" 三种状态；写入时先写临时文件再原子替换。
"""

import json
import os
import tempfile
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Tuple

import toml
import yaml
from loguru import logger

try:
    import fcntl

    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False

from modman.exceptions import (
    ConfigValidationError,
    CorruptStateError,
    StateAbsentError,
    StateEmptyError,
    StateLockedError,
    StateWriteError,
)
from modman.models import Config, ResolvedMod


CONFIG_FILE_NAME = "modman.toml"
LOCKFILE_NAME = "modman.lock"
DIR_LOCK_NAME = ".modman.lck"

_Loader = Callable[[str], object]
_Dumper = Callable[[dict], str]

_FORMATS: Dict[str, Tuple[_Loader, _Dumper, tuple]] = {
    ".toml": (toml.loads, toml.dumps, (toml.TomlDecodeError,)),
    ".lock": (toml.loads, toml.dumps, (toml.TomlDecodeError,)),
    ".json": (
        json.loads,
        lambda data: json.dumps(data, indent=2, ensure_ascii=False) + "\n",
        (json.JSONDecodeError,),
    ),
    ".yaml": (
        yaml.safe_load,
        lambda data: yaml.safe_dump(data, sort_keys=False, allow_unicode=True),
        (yaml.YAMLError,),
    ),
}
_FORMATS[".yml"] = _FORMATS[".yaml"]


def _format_for(path: str):
    suffix = os.path.splitext(path)[1].lower()
    if suffix not in _FORMATS:
        raise ConfigValidationError(
            f"不支持的文件格式: {suffix}", context={"file": path}
        )
    return _FORMATS[suffix]


class PersistentStore:
    """配置文件与锁文件的存储"""

    def __init__(
        self,
        base_dir: str,
        config_name: str = CONFIG_FILE_NAME,
        lockfile_name: str = LOCKFILE_NAME,
    ):
        self.base_dir = os.path.abspath(base_dir)
        self.config_path = os.path.join(self.base_dir, config_name)
        self.lockfile_path = os.path.join(self.base_dir, lockfile_name)

    def _read(self, path: str) -> dict:
        """读取并解析结构化文件"""
        name = os.path.basename(path)
        if not os.path.exists(path):
            raise StateAbsentError(name, f"文件不存在: {name}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptStateError(name, str(e))

        if not text.strip():
            raise StateEmptyError(name, f"文件为空: {name}")

        loads, _, decode_errors = _format_for(path)
        try:
            data = loads(text)
        except decode_errors as e:
            raise CorruptStateError(name, str(e))

        if not isinstance(data, dict):
            raise CorruptStateError(name, "顶层结构必须是表")
        return data

    def _serialize(self, path: str, data: dict) -> str:
        _, dumps, _ = _format_for(path)
        return dumps(data)

    def _write_temp(self, path: str, content: str) -> str:
        """写入同目录下的临时文件，返回临时文件路径"""
        directory = os.path.dirname(path)
        fd, tmp = tempfile.mkstemp(
            prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            self._discard(tmp)
            raise
        return tmp

    @staticmethod
    def _discard(tmp: str):
        try:
            if os.path.exists(tmp):
                os.remove(tmp)
        except OSError as e:
            logger.warning(f"[保存] 无法删除临时文件 {tmp}: {e}")

    def _atomic_write(self, items: List[Tuple[str, str]]):
        """
        原子写入多个文件

        先全部写入临时文件，全部成功后再依次替换目标文件，
        避免留下半新半旧的配置/锁文件组合。
        """
        temps: List[Tuple[str, str]] = []
        current = items[0][0]
        try:
            os.makedirs(self.base_dir, exist_ok=True)
            for path, content in items:
                current = path
                temps.append((self._write_temp(path, content), path))
            for tmp, path in temps:
                current = path
                os.replace(tmp, path)
        except OSError as e:
            raise StateWriteError(os.path.basename(current), f"写入文件失败: {e}")
        finally:
            for tmp, _ in temps:
                self._discard(tmp)

    def has_config(self) -> bool:
        return os.path.exists(self.config_path)

    def load_config(self) -> Config:
        """
        读取配置文件

        Raises:
            StateAbsentError: 配置文件不存在
            StateEmptyError: 配置文件为空
            CorruptStateError: 配置文件无法解析或内容无效
        """
        data = self._read(self.config_path)
        try:
            return Config.from_dict(data)
        except ConfigValidationError as e:
            raise CorruptStateError(os.path.basename(self.config_path), e.message)

    def load_lockfile(self) -> List[ResolvedMod]:
        """
        读取锁文件

        Raises:
            StateAbsentError: 锁文件不存在
            StateEmptyError: 锁文件为空
            CorruptStateError: 锁文件无法解析、条目无效或 ID 重复
        """
        name = os.path.basename(self.lockfile_path)
        data = self._read(self.lockfile_path)

        entries = data.get("mods", [])
        if not isinstance(entries, list):
            raise CorruptStateError(name, "'mods' 必须是数组")

        lockfile: List[ResolvedMod] = []
        seen = set()
        for raw in entries:
            try:
                entry = ResolvedMod.from_dict(raw)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise CorruptStateError(name, f"无效的条目 {raw!r}: {e}")
            if entry.id in seen:
                raise CorruptStateError(name, f"重复的模组 ID: {entry.id}")
            seen.add(entry.id)
            lockfile.append(entry)
        return lockfile

    def load_lockfile_or_empty(self) -> List[ResolvedMod]:
        """读取锁文件，不存在或为空时返回空列表"""
        try:
            return self.load_lockfile()
        except (StateAbsentError, StateEmptyError):
            return []

    def save_config(self, config: Config):
        self._atomic_write(
            [(self.config_path, self._serialize(self.config_path, config.to_dict()))]
        )
        logger.debug(f"[保存] 配置文件已写入: {self.config_path}")

    def save_lockfile(self, lockfile: List[ResolvedMod]):
        data = {"mods": [entry.to_dict() for entry in lockfile]}
        self._atomic_write(
            [(self.lockfile_path, self._serialize(self.lockfile_path, data))]
        )
        logger.debug(f"[保存] 锁文件已写入: {self.lockfile_path}")

    def save_state(self, config: Config, lockfile: List[ResolvedMod]):
        """同时保存配置文件与锁文件"""
        lock_data = {"mods": [entry.to_dict() for entry in lockfile]}
        self._atomic_write(
            [
                (
                    self.config_path,
                    self._serialize(self.config_path, config.to_dict()),
                ),
                (
                    self.lockfile_path,
                    self._serialize(self.lockfile_path, lock_data),
                ),
            ]
        )
        logger.debug("[保存] 配置文件与锁文件已写入")

    @contextmanager
    def locked(self) -> Iterator[None]:
        """
        目录级建议锁

        同一目录同一时间只允许一个 modman 操作。
        """
        os.makedirs(self.base_dir, exist_ok=True)
        lock_path = os.path.join(self.base_dir, DIR_LOCK_NAME)
        with open(lock_path, "a") as f:
            if _HAS_FCNTL:
                try:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    raise StateLockedError(
                        DIR_LOCK_NAME, "另一个 modman 进程正在操作该目录"
                    )
                try:
                    yield
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            else:
                logger.debug("fcntl 不可用，跳过目录锁")
                yield
