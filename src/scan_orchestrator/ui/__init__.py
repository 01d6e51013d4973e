"""UI package exports: the argparse CLI and its plain-text renderer."""

from scan_orchestrator.ui.cli import CLIError, build_parser, main, run_cli
from scan_orchestrator.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "main",
    "run_cli",
]
