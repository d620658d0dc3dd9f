import dataclasses
from pathlib import Path

import pytest

from imgpress.core.file_registry import FileRegistry
from imgpress.core.resource_gate import ResourceGate


@pytest.fixture
def managed(tmp_path: Path) -> Path:
    d = tmp_path / "managed"
    d.mkdir()
    return d


def _corrupt(reg: FileRegistry, token: str, path: Path):
    # simulate a registry entry pointing somewhere it never should
    reg._artifacts[token] = dataclasses.replace(reg._artifacts[token], path=str(path))


def test_serves_registered_file(managed: Path):
    reg = FileRegistry()
    p = managed / "a_mock.png"
    p.write_bytes(b"\x89PNG" + b"0" * 46)
    token = reg.register(p, "a.png", "mock", 100, 50)
    gate = ResourceGate(reg, managed)
    resp, data = gate.read_bytes(token)
    assert resp.status == 200
    assert resp.content_type == "image/png"
    assert data == p.read_bytes()


@pytest.mark.parametrize("token", [None, ""])
def test_missing_token_is_bad_request(managed: Path, token):
    assert ResourceGate(FileRegistry(), managed).resolve(token).status == 400


@pytest.mark.parametrize("token", ["short", "../../etc/passwd", "a" * 200, "tok en with spaces"])
def test_malformed_token_is_bad_request(managed: Path, token):
    assert ResourceGate(FileRegistry(), managed).resolve(token).status == 400


def test_unknown_token_is_not_found(managed: Path):
    assert ResourceGate(FileRegistry(), managed).resolve("abcdefgh12345678").status == 404


def test_missing_backing_file_is_not_found(managed: Path):
    reg = FileRegistry()
    token = reg.register(managed / "vanished.png", "vanished.png", "mock", 10, 5)
    assert ResourceGate(reg, managed).resolve(token).status == 404


def test_rejects_entry_pointing_outside_managed_dir(tmp_path: Path, managed: Path):
    outside = tmp_path / "secret.txt"
    outside.write_text("top secret")
    reg = FileRegistry()
    inside = managed / "ok.png"
    inside.write_bytes(b"ok")
    token = reg.register(inside, "ok.png", "mock", 4, 2)
    _corrupt(reg, token, outside)
    resp, data = ResourceGate(reg, managed).read_bytes(token)
    assert resp.status == 403
    assert data is None


def test_rejects_traversal_that_starts_inside_managed_dir(tmp_path: Path, managed: Path):
    outside = tmp_path / "secret.txt"
    outside.write_text("top secret")
    reg = FileRegistry()
    token = reg.register(managed / ".." / "secret.txt", "secret.txt", "mock", 4, 2)
    assert ResourceGate(reg, managed).resolve(token).status == 403


def test_rejects_symlink_escaping_managed_dir(tmp_path: Path, managed: Path):
    outside = tmp_path / "secret.txt"
    outside.write_text("top secret")
    link = managed / "link.png"
    try:
        link.symlink_to(outside)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not available")
    reg = FileRegistry()
    token = reg.register(link, "link.png", "mock", 4, 2)
    assert ResourceGate(reg, managed).resolve(token).status == 403


def test_gate_never_raises(managed: Path):
    class BrokenRegistry(FileRegistry):
        def resolve(self, token):
            raise RuntimeError("registry exploded")

    resp = ResourceGate(BrokenRegistry(), managed).resolve("abcdefgh12345678")
    assert resp.status == 500
