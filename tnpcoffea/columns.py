"""Narrow column-access contract between the TnP pipeline and its event source.

The pipeline only ever reads a named column and defines derived columns, so it
runs unchanged on coffea NanoEvents (``events.Electron.pt``), on awkward
records of flat NanoAOD branches (``uproot`` ``library="ak"``) and on plain
dicts of arrays in tests.
"""

from __future__ import annotations

import awkward as ak
import numpy as np


class EventTable:
    """Read named NanoAOD columns and hold derived ones.

    ``column("Electron_pt")`` is looked up, in order, among derived columns,
    as a flat field of the source, and as ``source["Electron"]["pt"]``.
    """

    def __init__(self, source):
        self._source = source
        self._derived: dict[str, object] = {}

    def __len__(self):
        if isinstance(self._source, dict):
            return len(next(iter(self._source.values()), []))
        return len(self._source)

    def _source_fields(self):
        if isinstance(self._source, dict):
            return set(self._source)
        return set(ak.fields(self._source))

    def has(self, name: str) -> bool:
        if name in self._derived:
            return True
        fields = self._source_fields()
        if name in fields:
            return True
        collection, _, attr = name.partition("_")
        if not attr or collection not in fields:
            return False
        return attr in ak.fields(self._source[collection])

    def column(self, name: str):
        """Return the column ``name``; raise KeyError naming it if absent."""
        if name in self._derived:
            return self._derived[name]
        fields = self._source_fields()
        if name in fields:
            return self._as_array(self._source[name])
        collection, _, attr = name.partition("_")
        if attr and collection in fields and attr in ak.fields(self._source[collection]):
            return self._source[collection][attr]
        raise KeyError(f"Missing input column '{name}'")

    def define(self, name: str, values) -> None:
        """Register a derived column; redefining a name replaces it."""
        self._derived[name] = values

    @property
    def derived(self) -> dict:
        return dict(self._derived)

    @staticmethod
    def _as_array(values):
        if isinstance(values, (list, np.ndarray)):
            return ak.Array(values)
        return values

    def collection(self, prefix: str, attributes: dict[str, str]):
        """Zip ``{field: f"{prefix}_{attr}"}`` into one record per object, with ``idx``.

        ``idx`` is the object's position in its original collection, so it
        survives later filtering.
        """
        fields = {field: self.column(f"{prefix}_{attr}") for field, attr in attributes.items()}
        first = next(iter(fields.values()))
        fields["idx"] = ak.local_index(first, axis=1)
        return ak.zip(fields)
