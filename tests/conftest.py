"""Shared fixtures: a tiny stub interpreter for driving the renderer."""

from __future__ import annotations

from typing import Callable, Dict, List

import pytest

from interpreter import StatementEnd, StatementFailure

STUB_CHARS = b"abcdefghijklmnopqrstuvwxyz0123456789=?!"


class StubEnvironment:
    """Environment for the stub language.

    ``k=v`` binds ``k``; ``?k`` writes the binding of ``k``; ``!`` fails;
    any other word is a no-op statement.
    """

    instances: List["StubEnvironment"] = []

    def __init__(self, *, filename: str, output_sink: Callable[[str], None]) -> None:
        self.filename = filename
        self.output_sink = output_sink
        self.bindings: Dict[str, str] = {}
        self.calls: List[int] = []
        self.closed = False
        StubEnvironment.instances.append(self)

    def close(self) -> None:
        self.closed = True


def stub_execute(source, offset, environment):
    environment.calls.append(offset)
    end = offset
    while end < len(source) and source[end:end + 1] in STUB_CHARS:
        end += 1
    word = source[offset:end].decode("ascii")
    if not word:
        return StatementFailure(message=f"failed to parse the next statement (offset={offset})", offset=offset)
    if word == "!":
        return StatementFailure(message="stub statement failed", offset=offset)
    if word.startswith("?"):
        name = word[1:]
        if name not in environment.bindings:
            return StatementFailure(message=f"unbound '{name}'", offset=offset)
        environment.output_sink(environment.bindings[name])
    elif "=" in word:
        name, value = word.split("=", 1)
        environment.bindings[name] = value
    return StatementEnd(offset=end)


@pytest.fixture
def stub_kwargs():
    StubEnvironment.instances.clear()
    return {"execute": stub_execute, "environment_factory": StubEnvironment}


@pytest.fixture
def write_template(tmp_path):
    def _write(content: bytes, name: str = "page.tmpl"):
        path = tmp_path / name
        path.write_bytes(content)
        return path

    return _write
