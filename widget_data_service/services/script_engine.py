"""
脚本沙箱服务
用户脚本（数据项脚本 / 处理脚本 / 合并脚本 / 请求前后脚本）在 asteval 受限解释器中执行：
  - 脚本体按函数体书写，用 return 返回结果
  - 只注入白名单全局对象：json / math / datetime / time / console + 调用方上下文
  - 禁止 import、双下划线属性访问和文件读写
"""

import asyncio
import copy
import datetime
import json
import logging
import math
import textwrap
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from typing import Any, Dict, Optional

from asteval import Interpreter
from pydantic import BaseModel

from widget_data_service.config import settings

logger = logging.getLogger(__name__)
_script_logger = logging.getLogger("widget_data_service.scripts")

_ENTRY_NAME = "_script_main"
SCRIPT_THREAD_PREFIX = "widget-script"

# 解释器内截止时间检查之外的兜底等待（内置函数的长时间调用无法中断）
_GRACE_SECONDS = 1.0

# asteval 默认带的可访问宿主环境的符号
_BLOCKED_SYMBOLS = ("open",)


class ScriptTimeoutError(Exception):
    """脚本超过截止时间"""


class _Deadline:
    """包装解释器的节点处理函数，超过截止时间后任何节点都不再执行"""

    def __init__(self, deadline: float):
        self.deadline = deadline
        self.expired = False

    def install(self, interp: Interpreter) -> None:
        for name, handler in list(interp.node_handlers.items()):
            interp.node_handlers[name] = self._guard(handler)

    def _guard(self, handler):
        def _run(node):
            if time.monotonic() > self.deadline:
                self.expired = True
                raise ScriptTimeoutError("脚本执行超时")
            return handler(node)
        return _run


class ScriptResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time: float = 0.0  # 毫秒


def _make_console() -> SimpleNamespace:
    """脚本内的 console，输出转到日志"""
    def _emit(level: int):
        def _log(*args: Any) -> None:
            _script_logger.log(level, " ".join(str(a) for a in args))
        return _log

    return SimpleNamespace(
        log=_emit(logging.INFO),
        info=_emit(logging.INFO),
        debug=_emit(logging.DEBUG),
        warn=_emit(logging.WARNING),
        error=_emit(logging.ERROR),
    )


def _safe_globals() -> Dict[str, Any]:
    return {
        "json": SimpleNamespace(
            loads=json.loads,
            dumps=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, default=str, **kw),
        ),
        "math": SimpleNamespace(
            **{name: getattr(math, name) for name in dir(math) if not name.startswith("_")}
        ),
        "datetime": datetime.datetime,
        "timedelta": datetime.timedelta,
        "time": SimpleNamespace(time=time.time, now_ms=lambda: int(time.time() * 1000)),
        "console": _make_console(),
    }


def _wrap(code: str) -> str:
    body = textwrap.indent(textwrap.dedent(code).strip("\n"), "    ")
    return f"def {_ENTRY_NAME}():\n{body}\n\n{_ENTRY_NAME}()\n"


class ScriptEngine:
    """受限脚本执行器，每次调用使用独立解释器与深拷贝的上下文"""

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout if timeout is not None else settings.SCRIPT_TIMEOUT

    async def execute(self, code: str, context: Optional[Dict[str, Any]] = None) -> ScriptResult:
        """
        执行脚本，永不抛出异常

        Args:
            code: 函数体形式的脚本，return 的值作为结果
            context: 注入脚本的变量，例如 {"data": ...}
        """
        start = time.perf_counter()
        if not code or not code.strip():
            return ScriptResult(success=False, error="脚本为空")

        try:
            isolated = copy.deepcopy(context or {})
        except Exception as exc:
            logger.debug(f"脚本上下文无法深拷贝，使用原对象: {exc}")
            isolated = dict(context or {})

        # 每次调用独占一个工作线程，截止时间由解释器内部检查
        deadline = time.monotonic() + self._timeout
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=SCRIPT_THREAD_PREFIX)
        try:
            data = await asyncio.wait_for(
                loop.run_in_executor(executor, self._run, code, isolated, deadline),
                timeout=self._timeout + _GRACE_SECONDS,
            )
            elapsed = (time.perf_counter() - start) * 1000
            return ScriptResult(success=True, data=data, execution_time=elapsed)
        except (ScriptTimeoutError, asyncio.TimeoutError):
            logger.warning(f"脚本执行超时（{self._timeout}s）")
            error = "脚本执行超时"
        except Exception as exc:
            logger.debug(f"脚本执行失败: {exc}")
            error = str(exc)
        finally:
            executor.shutdown(wait=False)
        elapsed = (time.perf_counter() - start) * 1000
        return ScriptResult(success=False, error=error, execution_time=elapsed)

    def _run(self, code: str, context: Dict[str, Any], deadline: float) -> Any:
        symbols = _safe_globals()
        symbols.update(context)
        interp = Interpreter(
            usersyms=symbols,
            use_numpy=False,
            writer=_NullWriter(),
            err_writer=_NullWriter(),
        )
        for name in _BLOCKED_SYMBOLS:
            interp.symtable.pop(name, None)
        guard = _Deadline(deadline)
        guard.install(interp)

        result = interp.eval(_wrap(code), show_errors=False)
        if guard.expired:
            raise ScriptTimeoutError("脚本执行超时")
        if interp.error:
            messages = []
            for err in interp.error:
                exc_name, msg = err.get_error()
                messages.append(f"{exc_name}: {msg.strip()}")
            raise RuntimeError("; ".join(messages))
        return result


class _NullWriter:
    """吞掉 asteval 自身的打印输出，错误通过 interp.error 收集"""

    def write(self, _text: str) -> int:
        return 0

    def flush(self) -> None:
        pass


# ── 模块级别单例 ──────────────────────────────────────────
_engine: Optional[ScriptEngine] = None


def get_script_engine() -> ScriptEngine:
    global _engine
    if _engine is None:
        _engine = ScriptEngine()
    return _engine
