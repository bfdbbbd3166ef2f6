"""
Compiler adapters for the supported languages.

Each adapter implements the :class:`CompilerAdapter` interface from
``base.py``.  Three variants exist:

* :class:`NativeCompilerAdapter` – C and C++ through gcc / g++;
* :class:`JvmCompilerAdapter` – Java through javac, run on the JVM;
* :class:`InterpretedCompilerAdapter` – Python, syntax-checked by the
  interpreter and run through a patched boot script.

:func:`build_adapters` creates one adapter per configured language.
"""

from typing import Dict

from ..config import Config
from .base import (
    CompileResult,
    CompilerAdapter,
    RunCommand,
    compile_succeeded,
    is_blocking,
    parse_diagnostics,
)
from .interpreted import InterpretedCompilerAdapter
from .jvm import JvmCompilerAdapter
from .native import NativeCompilerAdapter


def build_adapters(config: Config) -> Dict[str, CompilerAdapter]:
    timeout = config.compile_timeout_secs
    adapters: Dict[str, CompilerAdapter] = {
        "c": NativeCompilerAdapter.c(config.cc, timeout),
        "cpp": NativeCompilerAdapter.cpp(config.cxx, timeout),
        "java": JvmCompilerAdapter(config.javac, config.java, timeout_secs=timeout),
        "python": InterpretedCompilerAdapter(config.python_bin, timeout),
    }
    return {lang: adapter for lang, adapter in adapters.items() if lang in config.allowed_langs}


__all__ = [
    "CompileResult",
    "CompilerAdapter",
    "RunCommand",
    "compile_succeeded",
    "is_blocking",
    "parse_diagnostics",
    "InterpretedCompilerAdapter",
    "JvmCompilerAdapter",
    "NativeCompilerAdapter",
    "build_adapters",
]
