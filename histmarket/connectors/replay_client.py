"""
Replay Client - BackfillClient backed by a CSV of recorded ticks.

Used for paper runs and tests. ``get_ticker`` walks through the recording
one tick per call, ``get_historical`` answers range queries over it.
"""

from decimal import Decimal
from typing import Iterable, List, Optional

import pandas as pd

from ..core.exceptions import NotFoundError, FormatError
from ..core.types import Tick
from .backfill_client import BackfillClient


class ReplayBackfillClient(BackfillClient):
    """Replays a recorded tick stream for one or more symbols."""

    def __init__(self, frame: pd.DataFrame):
        """
        Initialize replay client.

        Args:
            frame: DataFrame with columns time, price and optionally symbol
        """
        missing = {'time', 'price'} - set(frame.columns)
        if missing:
            raise FormatError("Replay frame is missing columns", missing=sorted(missing))

        frame = frame.copy()
        frame['time'] = frame['time'].astype('int64')
        self.frame = frame.sort_values('time', kind='stable').reset_index(drop=True)
        self._cursor: dict = {}

    @classmethod
    def from_csv(cls, filepath: str) -> "ReplayBackfillClient":
        """Load a replay recording from CSV."""
        try:
            frame = pd.read_csv(filepath, dtype=str)
        except FileNotFoundError:
            raise NotFoundError("Replay file not found", path=filepath)
        return cls(frame)

    def _rows(self, symbol: str) -> pd.DataFrame:
        if 'symbol' not in self.frame.columns:
            return self.frame
        return self.frame[self.frame['symbol'] == symbol]

    @staticmethod
    def _to_ticks(rows: pd.DataFrame) -> List[Tick]:
        return [Tick(time=int(t), price=Decimal(str(p))) for t, p in zip(rows['time'], rows['price'])]

    def get_ticker(self, symbol: str) -> Optional[Tick]:
        rows = self._rows(symbol)
        pos = self._cursor.get(symbol, 0)
        if pos >= len(rows):
            return None
        self._cursor[symbol] = pos + 1
        return self._to_ticks(rows.iloc[pos:pos + 1])[0]

    def get_historical(self, symbol: str, start: int, end: int) -> Iterable[Tick]:
        rows = self._rows(symbol)
        rows = rows[(rows['time'] >= start) & (rows['time'] < end)]
        return self._to_ticks(rows)
