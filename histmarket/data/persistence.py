"""
Persistence Codec - Reads and writes raw series files.

Binary layout (little-endian):
 - magic:   8 bytes  b"HMDAT001"
 - count:   uint64   number of records
 - records: count x 18 bytes
     time      int64   observation time, epoch seconds
     mantissa  int64   price = mantissa * 10 ** exponent (exact)
     exponent  int8
     flags     uint8   bit 0 = interpolated

Legacy CSV layout: ``time,price,interpolated`` rows (header optional,
interpolated column optional).

Writes are atomic (temp file -> rename).
"""

import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..core.constants import BINARY_MAGIC, CSV_COLUMNS, FLAG_INTERPOLATED, RAW_BUCKET_SECONDS, FileFormat
from ..core.exceptions import DataValidationError, FormatError, NotFoundError, OutOfOrderError
from ..core.types import Tick
from .raw_series import RawSeries

logger = logging.getLogger(__name__)

RECORD_DTYPE = np.dtype([
    ('time', '<i8'),
    ('mantissa', '<i8'),
    ('exponent', 'i1'),
    ('flags', 'u1'),
])

HEADER_SIZE = len(BINARY_MAGIC) + 8

INT64_MAX = np.iinfo(np.int64).max

PathLike = Union[str, Path]


def encode_price(price: Decimal) -> Tuple[int, int]:
    """Split a price into (mantissa, exponent) with price == mantissa * 10**exponent."""
    sign, digits, exponent = price.as_tuple()
    mantissa = int(''.join(map(str, digits)) or '0')
    if sign:
        mantissa = -mantissa

    if abs(mantissa) > INT64_MAX or not -128 <= exponent <= 127:
        raise FormatError("Price cannot be encoded in the binary format", price=str(price))

    return mantissa, exponent


def decode_price(mantissa: int, exponent: int) -> Decimal:
    return Decimal(int(mantissa)).scaleb(int(exponent))


_FLAG_VALUES = {'': False, '0': False, 'false': False, 'nan': False, '1': True, 'true': True}


def _parse_flag(value) -> bool:
    """Legacy CSV interpolated column; blank counts as observed."""
    text = str(value).strip().lower()
    if text not in _FLAG_VALUES:
        raise ValueError(f"Invalid interpolated flag: {value!r}")
    return _FLAG_VALUES[text]


class PersistenceCodec:
    """
    Reads and writes raw series in binary or legacy CSV form.
    """

    def __init__(self, width: int = RAW_BUCKET_SECONDS):
        """
        Initialize codec.

        Args:
            width: RAW bucket width of the series it builds
        """
        self.width = width
        self.last_format: Optional[FileFormat] = None

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read_from_file(self, path: PathLike) -> RawSeries:
        """
        Load a raw series, detecting the format by its header.

        CSV files produce a series in legacy CSV mode.

        Raises:
            NotFoundError: If the path does not exist
            FormatError: If the file is structurally corrupt
        """
        path = Path(path)
        if not path.exists():
            raise NotFoundError("History file not found", path=str(path))

        with open(path, 'rb') as f:
            head = f.read(len(BINARY_MAGIC))

        if head == BINARY_MAGIC:
            series = self._read_binary(path)
            self.last_format = FileFormat.BINARY
        else:
            series = self._read_csv(path)
            self.last_format = FileFormat.CSV

        logger.info(
            "Read %d ticks from %s (%s)",
            len(series), path, self.last_format.value
        )
        return series

    def _read_binary(self, path: Path) -> RawSeries:
        data = path.read_bytes()
        if len(data) < HEADER_SIZE:
            raise FormatError("Truncated header", path=str(path))

        count = int(np.frombuffer(data, dtype='<u8', count=1, offset=len(BINARY_MAGIC))[0])
        expected = HEADER_SIZE + count * RECORD_DTYPE.itemsize
        if len(data) != expected:
            raise FormatError(
                "Record section size does not match header",
                path=str(path),
                expected_bytes=expected,
                actual_bytes=len(data)
            )

        series = RawSeries(width=self.width)
        if count == 0:
            return series

        records = np.frombuffer(data, dtype=RECORD_DTYPE, count=count, offset=HEADER_SIZE)
        if count > 1 and not (np.diff(records['time']) > 0).all():
            raise FormatError("Record times are not strictly increasing", path=str(path))
        if (records['flags'] & ~np.uint8(FLAG_INTERPOLATED)).any():
            raise FormatError("Unknown record flags", path=str(path))

        for time, mantissa, exponent, flags in records.tolist():
            self._push(series, path, time, decode_price(mantissa, exponent), bool(flags & FLAG_INTERPOLATED))
        return series

    def _read_csv(self, path: Path) -> RawSeries:
        try:
            frame = pd.read_csv(path, header=None, dtype=str, comment='#', skip_blank_lines=True)
        except pd.errors.EmptyDataError:
            return RawSeries(width=self.width, csv_enabled=True)
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise FormatError(f"Unreadable CSV: {e}", path=str(path))

        if len(frame.columns) < 2 or len(frame.columns) > 3:
            raise FormatError("CSV must have 2 or 3 columns", path=str(path), columns=len(frame.columns))

        if len(frame) and str(frame.iloc[0, 0]).strip().lower() == CSV_COLUMNS[0]:
            frame = frame.iloc[1:]

        series = RawSeries(width=self.width, csv_enabled=True)
        previous = None
        for row in frame.itertuples(index=False):
            try:
                time = int(str(row[0]).strip())
                price = Decimal(str(row[1]).strip())
                interpolated = _parse_flag(row[2]) if len(row) > 2 else False
            except (ValueError, InvalidOperation):
                raise FormatError("Unparsable CSV row", path=str(path), row=tuple(row))

            if previous is not None and time <= previous:
                raise FormatError("CSV times are not strictly increasing", path=str(path), time=time)
            previous = time

            self._push(series, path, time, price, interpolated)
        return series

    @staticmethod
    def _push(series: RawSeries, path: Path, time: int, price: Decimal, interpolated: bool) -> None:
        if time in series:
            raise FormatError("Two records share one RAW slot", path=str(path), time=time)
        try:
            series.push(Tick(time=time, price=price, interpolated=interpolated))
        except (DataValidationError, OutOfOrderError) as e:
            raise FormatError(f"Invalid record: {e}", path=str(path), time=time)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write_to_file(self, series: RawSeries, path: PathLike, fmt: Optional[FileFormat] = None) -> Path:
        """
        Persist a series atomically.

        Args:
            series: Series to write
            path: Destination file
            fmt: Format override; defaults to CSV while the series is in
                legacy CSV mode, binary otherwise

        Returns:
            The written path
        """
        path = Path(path)
        fmt = fmt or (FileFormat.CSV if series.csv_enabled else FileFormat.BINARY)
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_file = path.with_name(path.name + ".tmp")
        if fmt == FileFormat.CSV:
            self._write_csv(series, temp_file)
        else:
            self._write_binary(series, temp_file)
        temp_file.replace(path)

        logger.info("Wrote %d ticks to %s (%s)", len(series), path, fmt.value)
        return path

    def _write_binary(self, series: RawSeries, path: Path) -> None:
        records = np.empty(len(series), dtype=RECORD_DTYPE)
        for i, tick in enumerate(series):
            mantissa, exponent = encode_price(tick.price)
            records[i] = (tick.time, mantissa, exponent, FLAG_INTERPOLATED if tick.interpolated else 0)

        with open(path, 'wb') as f:
            f.write(BINARY_MAGIC)
            f.write(np.array([len(records)], dtype='<u8').tobytes())
            f.write(records.tobytes())

    def _write_csv(self, series: RawSeries, path: Path) -> None:
        with open(path, 'w') as f:
            f.write(','.join(CSV_COLUMNS) + '\n')
            for row in series.csv_rows():
                f.write(row + '\n')
