from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np


class SparseDimension:
    """
    Bidirectional map between grid-wide sparse ids and compact dense indices.

    Dense indices are handed out contiguously from 0 in the order sparse ids
    are first seen. Once assigned, a dense index is never reassigned or
    removed.

    Parameters
    ----------
    sparse_extent : int, optional
        Number of cells in the full grid. If given, sparse ids outside
        ``[0, sparse_extent)`` are rejected.
    """

    def __init__(self, sparse_extent: Optional[int] = None) -> None:
        self.sparse_extent = sparse_extent
        self._sparse_to_dense: Dict[int, int] = {}
        self._dense_to_sparse: List[int] = []
        self._lookup_cache: Optional[Tuple[np.ndarray, np.ndarray]] = None

    @classmethod
    def from_sparse_ids(
        cls, sparse_ids: Iterable[int], sparse_extent: Optional[int] = None
    ) -> "SparseDimension":
        """Rebuild a dimension whose dense index ``k`` maps to ``sparse_ids[k]``."""
        ids = np.asarray(list(sparse_ids), dtype=np.int64)
        dim = cls(sparse_extent)
        dim.add_dense_many(ids, return_dense=False)
        if len(dim) != ids.size:
            raise ValueError("Duplicate sparse ids")
        return dim

    def __len__(self) -> int:
        return len(self._dense_to_sparse)

    @property
    def dense_extent(self) -> int:
        return len(self._dense_to_sparse)

    def __contains__(self, sparse_id: int) -> bool:
        return int(sparse_id) in self._sparse_to_dense

    def __repr__(self) -> str:
        return (
            f"SparseDimension(dense_extent={self.dense_extent}, "
            f"sparse_extent={self.sparse_extent})"
        )

    @property
    def sparse_ids(self) -> np.ndarray:
        """Sparse ids in dense-index order."""
        return np.asarray(self._dense_to_sparse, dtype=np.int64)

    def _check_range(self, ids: np.ndarray) -> None:
        if ids.size == 0:
            return
        if ids.min() < 0 or (
            self.sparse_extent is not None and ids.max() >= self.sparse_extent
        ):
            raise ValueError(
                f"Sparse id out of range [0, {self.sparse_extent}): "
                f"min={ids.min()}, max={ids.max()}"
            )

    def add_dense(self, sparse_id: int) -> int:
        """
        Return the dense index of ``sparse_id``, allocating the next one if new.

        Parameters
        ----------
        sparse_id : int
            Grid-wide cell id.

        Returns
        -------
        int
            The dense index.
        """
        sparse_id = int(sparse_id)
        dense = self._sparse_to_dense.get(sparse_id)
        if dense is not None:
            return dense
        self._check_range(np.array([sparse_id]))
        dense = len(self._dense_to_sparse)
        self._sparse_to_dense[sparse_id] = dense
        self._dense_to_sparse.append(sparse_id)
        self._lookup_cache = None
        return dense

    def add_dense_many(
        self, sparse_ids: np.ndarray, return_dense: bool = True
    ) -> Optional[np.ndarray]:
        """
        Vectorized :meth:`add_dense`.

        New ids are allocated in the order of their first occurrence in
        ``sparse_ids``. Registration alone costs O(batch); only looking the
        dense indices back up needs the sorted lookup table.

        Parameters
        ----------
        sparse_ids : np.ndarray
            Sparse ids to register.
        return_dense : bool, default True
            If False, only register the ids and return None.

        Returns
        -------
        np.ndarray or None
            Dense index of every input id, same shape as the input.
        """
        ids = np.asarray(sparse_ids, dtype=np.int64)
        if ids.size == 0:
            return np.empty(ids.shape, dtype=np.int64) if return_dense else None
        self._check_range(ids)

        uniq, first = np.unique(ids.ravel(), return_index=True)
        added = False
        for sid in uniq[np.argsort(first, kind="stable")].tolist():
            if sid not in self._sparse_to_dense:
                self._sparse_to_dense[sid] = len(self._dense_to_sparse)
                self._dense_to_sparse.append(sid)
                added = True
        if added:
            self._lookup_cache = None
        if not return_dense:
            return None
        return self.to_dense(ids)

    def _lookup(self) -> Tuple[np.ndarray, np.ndarray]:
        if self._lookup_cache is None:
            s2d = self.sparse_ids
            order = np.argsort(s2d, kind="stable")
            self._lookup_cache = (s2d[order], order.astype(np.int64))
        return self._lookup_cache

    def to_dense(self, sparse_ids: np.ndarray, missing: Optional[int] = None) -> np.ndarray:
        """
        Map sparse ids to dense indices without adding anything.

        Parameters
        ----------
        sparse_ids : np.ndarray
            Sparse ids to look up.
        missing : int, optional
            Value returned for ids not in the dimension. If None, a KeyError
            is raised instead.

        Returns
        -------
        np.ndarray
            Dense indices (int64), same shape as the input.
        """
        ids = np.asarray(sparse_ids, dtype=np.int64)
        keys, dense = self._lookup()
        if keys.size == 0:
            found = np.zeros(ids.shape, dtype=bool)
            pos = np.zeros(ids.shape, dtype=np.int64)
        else:
            pos = np.minimum(np.searchsorted(keys, ids), keys.size - 1)
            found = keys[pos] == ids

        if not found.all() and missing is None:
            bad = ids[~found]
            raise KeyError(f"Sparse ids not in dimension: {bad[:10].tolist()}")

        out = np.full(ids.shape, -1 if missing is None else missing, dtype=np.int64)
        out[found] = dense[pos[found]]
        return out

    def to_sparse(self, dense_indices: np.ndarray) -> np.ndarray:
        """Map dense indices back to sparse ids."""
        return self.sparse_ids[np.asarray(dense_indices, dtype=np.int64)]
