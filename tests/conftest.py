"""Shared fixtures for composehost tests."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from composehost.config_constants import ENV_HOST, ENV_KEY_FILE, ENV_ROOT  # noqa: E402
from composehost.crypto import generate_identity, write_identity  # noqa: E402

REPO_ROOT = Path(__file__).resolve().parents[1]
TEST_REPO = REPO_ROOT / "test-repo"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep the developer's own key, host and root out of every test."""
    monkeypatch.delenv(ENV_HOST, raising=False)
    monkeypatch.delenv(ENV_ROOT, raising=False)
    monkeypatch.setenv(ENV_KEY_FILE, str(tmp_path / "no-such-key.txt"))


@pytest.fixture
def sample_project(tmp_path) -> Path:
    """A private copy of test-repo/ so tests can add hosts, keys and secrets."""
    root = tmp_path / "project"
    shutil.copytree(TEST_REPO, root)
    return root


@pytest.fixture
def identity(tmp_path, monkeypatch):
    """A fresh private key written to disk and selected via COMPOSEHOST_KEY_FILE."""
    key = generate_identity()
    key_path = tmp_path / "keys-private" / "key.txt"
    write_identity(key_path, key)
    monkeypatch.setenv(ENV_KEY_FILE, str(key_path))
    return key


def publish(root: Path, name: str, public_key: str) -> Path:
    keystore = root / "keys"
    keystore.mkdir(parents=True, exist_ok=True)
    pub_path = keystore / f"{name}.pub"
    pub_path.write_text(f"# {name}\n{public_key}\n", encoding="utf-8")
    return pub_path


def snapshot(root: Path) -> dict:
    return {
        path.relative_to(root): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }
