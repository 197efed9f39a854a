"""External static-analysis tool adapters."""

from omniaudit.analyzer.tools.base import StaticToolAdapter, ToolRun
from omniaudit.analyzer.tools.clippy import ClippyAdapter
from omniaudit.analyzer.tools.hlint import HLintAdapter
from omniaudit.analyzer.tools.move import AptosMoveAdapter, MoveLintAdapter, SuiMoveAdapter
from omniaudit.analyzer.tools.slither import SlitherAdapter

__all__ = [
    "AptosMoveAdapter",
    "ClippyAdapter",
    "HLintAdapter",
    "MoveLintAdapter",
    "SlitherAdapter",
    "StaticToolAdapter",
    "SuiMoveAdapter",
    "ToolRun",
]
