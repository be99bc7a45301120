# cadence/archive.py

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import List, Optional, Set, Union

import numpy as np
import torch

from .errors import CaptureIOError, UnsupportedCaptureType

PathLike = Union[str, Path]

# Plain dtypes stored as-is; quantized ones through their integer representation.
_PLAIN_DTYPES = (torch.float32, torch.float64, torch.int32, torch.int8, torch.uint8)
_QUANTIZED_DTYPES = (torch.qint8, torch.quint8, torch.qint32)


def capture_key(node_name: str, slot: int, turn: Optional[int] = None) -> str:
    """
    Archive key for output ``slot`` of ``node_name``: ``N`` for slot 0,
    ``N:i`` otherwise, prefixed with ``turn_{T}/`` for multi-turn runs.
    """
    name = node_name if slot == 0 else f"{node_name}:{slot}"
    if turn is not None:
        name = f"turn_{turn}/{name}"
    return name


def capture_array(tensor: torch.Tensor) -> np.ndarray:
    """
    Convert a tensor to the numpy array stored in the archive.
    """
    if tensor.dtype in _PLAIN_DTYPES:
        return tensor.detach().cpu().numpy()
    if tensor.dtype in _QUANTIZED_DTYPES:
        return tensor.detach().cpu().int_repr().numpy()
    raise UnsupportedCaptureType(f"Unsupported capture type {tensor.dtype}", dtype=tensor.dtype)


class NpzWriter:
    """
    Append-only writer producing a compressed ``.npz`` archive.

    Each ``add_array`` call streams one ``<key>.npy`` member into the zip file,
    so everything written before a failure is still readable once the writer
    is closed. Use as a context manager to guarantee the close.
    """

    def __init__(self, path: PathLike, *, compressed: bool = True) -> None:
        self.path = Path(path)
        compression = zipfile.ZIP_DEFLATED if compressed else zipfile.ZIP_STORED
        try:
            self._zip: Optional[zipfile.ZipFile] = zipfile.ZipFile(
                self.path, mode="w", compression=compression, allowZip64=True
            )
        except OSError as exc:
            raise CaptureIOError(f"Creating {self.path}: {exc}") from exc
        self._keys: Set[str] = set()
        self._order: List[str] = []

    @property
    def keys(self) -> List[str]:
        return list(self._order)

    @property
    def closed(self) -> bool:
        return self._zip is None

    def add_array(self, key: str, array: np.ndarray) -> None:
        if self._zip is None:
            raise CaptureIOError(f"Archive {self.path} is closed", key=key)
        if key in self._keys:
            raise CaptureIOError(f"Duplicate archive key {key!r}", key=key)
        try:
            with self._zip.open(f"{key}.npy", mode="w", force_zip64=True) as member:
                np.lib.format.write_array(member, np.ascontiguousarray(array), allow_pickle=False)
        except (OSError, ValueError) as exc:
            raise CaptureIOError(f"Writing {key!r} to {self.path}: {exc}", key=key) from exc
        self._keys.add(key)
        self._order.append(key)

    def add_tensor(self, key: str, tensor: torch.Tensor) -> None:
        """Store a tensor; raises UnsupportedCaptureType for unknown dtypes."""
        self.add_array(key, capture_array(tensor))

    def close(self) -> None:
        if self._zip is None:
            return
        archive, self._zip = self._zip, None
        try:
            archive.close()
        except OSError as exc:
            raise CaptureIOError(f"Closing {self.path}: {exc}") from exc

    def __enter__(self) -> "NpzWriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
