"""Shared pytest configuration: markers, ordering, and stub executables."""

from __future__ import annotations

import os
import stat
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that wait on timeouts or kill process trees")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


def write_stub_cli(directory: Path, name: str, script_body: str) -> str:
    """Create an executable wrapper that runs *script_body* with this interpreter."""
    impl = directory / f"{name}_impl.py"
    impl.write_text(textwrap.dedent(script_body), encoding="utf-8")

    if os.name == "nt":
        wrapper = directory / f"{name}.cmd"
        wrapper.write_text(f'@echo off\r\n"{sys.executable}" "{impl}" %*\r\n', encoding="utf-8")
        return str(wrapper)

    wrapper = directory / name
    wrapper.write_text(f'#!/usr/bin/env sh\nexec "{sys.executable}" "{impl}" "$@"\n', encoding="utf-8")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IEXEC)
    return str(wrapper)


@pytest.fixture
def make_stub_cli(tmp_path: Path) -> Callable[[str, str], str]:
    """Factory fixture: ``make_stub_cli(name, script_body) -> executable path``."""

    def _make(name: str, script_body: str) -> str:
        return write_stub_cli(tmp_path, name, script_body)

    return _make


def python_command(code: str) -> str:
    """A step command string that runs *code* with the current interpreter."""
    escaped = code.replace('"', '\\"')
    return f'"{sys.executable}" -c "{escaped}"'
