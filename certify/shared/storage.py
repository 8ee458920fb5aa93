from __future__ import annotations

import base64
import binascii
import os
import tempfile
from typing import Protocol


class AssetLoadError(IOError):
    """Raised when an image reference cannot be turned into bytes."""


class AssetLoader(Protocol):
    def load(self, reference: str) -> bytes: ...


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data, mode: str = "wb") -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def safe_asset_path(root: str, candidate: str | None) -> str | None:
    raw = (candidate or "").strip()
    if not raw:
        return None
    asset_root = os.path.realpath(root)
    if os.path.isabs(raw):
        resolved = os.path.realpath(raw)
    else:
        resolved = os.path.realpath(os.path.join(root, raw))
    if resolved == asset_root or resolved.startswith(f"{asset_root}{os.sep}"):
        return resolved
    return None


def decode_data_uri(reference: str) -> bytes:
    header, _, payload = reference.partition(",")
    if not header.startswith("data:") or not payload:
        raise AssetLoadError("malformed data URI")
    if not header.endswith(";base64"):
        raise AssetLoadError("only base64 data URIs are supported")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AssetLoadError("invalid base64 payload") from exc


class FileAssetLoader:
    """Resolve image references from inline data URIs or files under ``root``."""

    def __init__(self, root: str):
        self.root = root

    def load(self, reference: str) -> bytes:
        ref = (reference or "").strip()
        if not ref:
            raise AssetLoadError("empty asset reference")
        if ref.startswith("data:"):
            return decode_data_uri(ref)
        path = safe_asset_path(self.root, ref)
        if not path:
            raise AssetLoadError(f"asset {ref!r} is outside the upload root")
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise AssetLoadError(f"asset {ref!r} could not be read") from exc
