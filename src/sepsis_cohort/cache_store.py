"""
Cache storage for raw per-variable query results.

A live query writes its raw result under the variable's key; a cached run
reads it back instead of touching the database. Tables are serialized with
pickle, the same way the pipeline saves its other intermediate artifacts.
"""
import pickle
from pathlib import Path
from typing import Dict

import pandas as pd

from .config import RAW_EVENT_COLUMNS
from .errors import CacheCorruptError, CacheMissingError


class CacheStore:
    """Key to bytes storage used by the variable extractor."""

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def __contains__(self, key: str) -> bool:
        raise NotImplementedError


class FileCacheStore(CacheStore):
    """
    One pickle file per key inside a directory.

    Args:
        directory (str): Cache directory, created on first write
    """

    SUFFIX = ".pkl"

    def __init__(self, directory):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}{self.SUFFIX}"

    def get(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError as e:
            raise CacheMissingError(f"No cached data for '{key}' at {path}") from e
        except OSError as e:
            raise CacheCorruptError(f"Cannot read cached data for '{key}' at {path}: {e}") from e

    def put(self, key: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.path_for(key), 'wb') as f:
            f.write(data)

    def __contains__(self, key: str) -> bool:
        return self.path_for(key).is_file()


class MemoryCacheStore(CacheStore):
    """Dictionary-backed cache, mainly for tests."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}

    def get(self, key: str) -> bytes:
        if key not in self._data:
            raise CacheMissingError(f"No cached data for '{key}'")
        return self._data[key]

    def put(self, key: str, data: bytes) -> None:
        self._data[key] = data

    def __contains__(self, key: str) -> bool:
        return key in self._data


def dumps_table(df: pd.DataFrame) -> bytes:
    """Serialize a raw event table for the cache."""
    return pickle.dumps(df, protocol=pickle.HIGHEST_PROTOCOL)


def loads_table(data: bytes) -> pd.DataFrame:
    """
    Deserialize a raw event table from the cache.

    Raises:
        CacheCorruptError: If the blob does not unpickle, is not a DataFrame,
            or lacks any of the raw event columns
    """
    try:
        df = pickle.loads(data)
    except Exception as e:
        raise CacheCorruptError(f"Cached table could not be deserialized: {e}") from e

    if not isinstance(df, pd.DataFrame):
        raise CacheCorruptError(f"Cached object is a {type(df).__name__}, expected a DataFrame")
    missing = [col for col in RAW_EVENT_COLUMNS if col not in df.columns]
    if missing:
        raise CacheCorruptError(f"Cached table is missing columns: {missing}")
    return df
