import hashlib
import math
import uuid


class ExerciseIdentity:
    """Derive identifiers for exercises and other store rows."""

    @staticmethod
    def clean_name(name: str) -> str:
        """Return ``name`` with surrounding whitespace removed."""
        return name.strip()

    @staticmethod
    def stable_id(name: str) -> str:
        """Return a deterministic UUID string for an exercise ``name``.

        The SHA-256 digest of the trimmed name is cut to 16 bytes and stamped
        with version 5 and the RFC 4122 variant so the value has the same
        shape as ids produced by :meth:`new_id`. Case and inner whitespace
        are significant.
        """
        digest = hashlib.sha256(name.strip().encode("utf-8")).digest()
        raw = bytearray(digest[:16])
        raw[6] = (raw[6] & 0x0F) | 0x50
        raw[8] = (raw[8] & 0x3F) | 0x80
        return str(uuid.UUID(bytes=bytes(raw))).upper()

    @staticmethod
    def new_id() -> str:
        """Return a random identifier for rows without a natural key."""
        return str(uuid.uuid4()).upper()


class LenientParser:
    """Forgiving conversions for user-exported text fields."""

    _DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0}

    @staticmethod
    def number(raw: str | None) -> float | None:
        """Return ``raw`` as float or ``None`` when it is blank or invalid."""
        if raw is None:
            return None
        text = raw.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None

    @classmethod
    def integer(cls, raw: str | None) -> int | None:
        """Return ``raw`` as int, rounding decimal strings half away from zero."""
        if raw is None:
            return None
        text = raw.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        value = cls.number(text)
        if value is None or not math.isfinite(value):
            return None
        return int(math.copysign(math.floor(abs(value) + 0.5), value))

    @classmethod
    def duration_seconds(cls, raw: str | None) -> float | None:
        """Parse durations such as ``"1h 5m 10s"`` into seconds.

        Unknown tokens are ignored. ``None`` is returned when no token could
        be read, which callers treat as "duration unknown".
        """
        if raw is None:
            return None
        text = raw.strip().lower()
        if not text:
            return None
        total = 0.0
        parsed_any = False
        for token in text.split():
            unit = cls._DURATION_UNITS.get(token[-1])
            if unit is None:
                continue
            try:
                value = float(token[:-1])
            except ValueError:
                continue
            total += value * unit
            parsed_any = True
        return total if parsed_any else None
