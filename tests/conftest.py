"""Shared fixtures for the dice game tests."""

import pytest

from nontransitive_dice import Die, FairDieRoller, SecureRandomSource


class ScriptedBytes:
    """Byte reader that hands out a fixed script, so rolls are predictable."""

    def __init__(self, data: bytes):
        self._data = bytearray(data)

    def __call__(self, size: int) -> bytes:
        if len(self._data) < size:
            raise AssertionError(f"random script exhausted (wanted {size} bytes)")
        chunk = bytes(self._data[:size])
        del self._data[:size]
        return chunk

    @property
    def remaining(self) -> int:
        return len(self._data)


@pytest.fixture
def classic_dice():
    return [
        Die([2, 2, 4, 4, 9, 9]),
        Die([1, 1, 6, 6, 8, 8]),
        Die([3, 3, 5, 5, 7, 7]),
    ]


@pytest.fixture
def scripted_source():
    """Factory: scripted_source(b"...") -> (SecureRandomSource, ScriptedBytes)."""
    def make(data: bytes):
        script = ScriptedBytes(data)
        return SecureRandomSource(reader=script), script
    return make


@pytest.fixture
def secure_roller():
    return FairDieRoller(SecureRandomSource())


@pytest.fixture
def scripted_input(monkeypatch):
    """Feeds the given lines to input() in order."""
    def feed(*lines):
        remaining = iter(lines)
        monkeypatch.setattr("builtins.input", lambda _prompt="": next(remaining))
    return feed
