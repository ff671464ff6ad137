"""
Ruby Marshal (format 4.8) reader and writer.

Only the subset used by RubyGems index files is supported. Ruby values map
to Python as follows:

    nil/true/false      None/True/False
    Fixnum, Bignum      int
    Float               float
    String              str (UTF-8 or US-ASCII) or bytes (binary)
    Symbol              Symbol
    Array, Hash         list, dict
    Object ('o')        RubyObject
    marshal_dump ('U')  UserMarshal
    _dump ('u')         UserDump
"""
from __future__ import annotations

import io
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List

from gembox.domain.errors import MarshalError

MAJOR_VERSION = 4
MINOR_VERSION = 8
MARSHAL_VERSION = f"{MAJOR_VERSION}.{MINOR_VERSION}"
_HEADER = bytes([MAJOR_VERSION, MINOR_VERSION])


class Symbol(str):
    """A Ruby symbol. Compares equal to its plain string name."""

    def __repr__(self) -> str:
        return f":{str.__str__(self)}"


@dataclass
class RubyObject:
    class_name: str
    ivars: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UserMarshal:
    class_name: str
    data: Any


@dataclass
class UserDump:
    class_name: str
    data: bytes
    ivars: Dict[str, Any] = field(default_factory=dict)


def gem_version(version: str) -> UserMarshal:
    """A ``Gem::Version`` as produced by its marshal_dump."""
    return UserMarshal("Gem::Version", [str(version)])


def gem_requirement(requirements) -> UserMarshal:
    """A ``Gem::Requirement`` from (operator, version) pairs."""
    return UserMarshal(
        "Gem::Requirement",
        [[[str(op), gem_version(ver)] for op, ver in requirements]],
    )


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class _Writer:
    def __init__(self) -> None:
        self.out = io.BytesIO()
        self.symbols: Dict[str, int] = {}

    def byte(self, value: int) -> None:
        self.out.write(bytes([value & 0xFF]))

    def long(self, value: int) -> None:
        if value == 0:
            self.byte(0)
        elif 0 < value < 123:
            self.byte(value + 5)
        elif -124 < value < 0:
            self.byte(value - 5)
        else:
            buf = bytearray()
            n = value
            for _ in range(4):
                buf.append(n & 0xFF)
                n >>= 8
                if (value >= 0 and n == 0) or (value < 0 and n == -1):
                    break
            else:
                raise MarshalError(f"Integer {value} does not fit a Fixnum")
            self.byte(len(buf) if value >= 0 else -len(buf))
            self.out.write(bytes(buf))

    def raw(self, data: bytes) -> None:
        self.long(len(data))
        self.out.write(data)

    def symbol(self, name: str) -> None:
        if name in self.symbols:
            self.out.write(b";")
            self.long(self.symbols[name])
            return
        self.symbols[name] = len(self.symbols)
        self.out.write(b":")
        self.raw(name.encode("utf-8"))

    def ivars(self, ivars: Dict[str, Any]) -> None:
        self.long(len(ivars))
        for key, value in ivars.items():
            self.symbol(key)
            self.dump(value)

    def dump(self, obj: Any) -> None:
        if obj is None:
            self.out.write(b"0")
        elif obj is True:
            self.out.write(b"T")
        elif obj is False:
            self.out.write(b"F")
        elif isinstance(obj, Symbol):
            self.symbol(str(obj))
        elif isinstance(obj, int):
            if -(2 ** 31) <= obj < 2 ** 31:
                self.out.write(b"i")
                self.long(obj)
            else:
                self._bignum(obj)
        elif isinstance(obj, float):
            self.out.write(b"f")
            self.raw(_format_float(obj))
        elif isinstance(obj, str):
            # UTF-8 strings carry the E=true encoding ivar.
            self.out.write(b"I\"")
            self.raw(obj.encode("utf-8"))
            self.long(1)
            self.symbol("E")
            self.out.write(b"T")
        elif isinstance(obj, (bytes, bytearray)):
            self.out.write(b"\"")
            self.raw(bytes(obj))
        elif isinstance(obj, (list, tuple)):
            self.out.write(b"[")
            self.long(len(obj))
            for item in obj:
                self.dump(item)
        elif isinstance(obj, dict):
            self.out.write(b"{")
            self.long(len(obj))
            for key, value in obj.items():
                self.dump(key)
                self.dump(value)
        elif isinstance(obj, UserMarshal):
            self.out.write(b"U")
            self.symbol(obj.class_name)
            self.dump(obj.data)
        elif isinstance(obj, UserDump):
            if obj.ivars:
                self.out.write(b"I")
            self.out.write(b"u")
            self.symbol(obj.class_name)
            self.raw(obj.data)
            if obj.ivars:
                self.ivars(obj.ivars)
        elif isinstance(obj, RubyObject):
            self.out.write(b"o")
            self.symbol(obj.class_name)
            self.ivars(obj.ivars)
        else:
            raise MarshalError(f"Cannot marshal {type(obj).__name__}")

    def _bignum(self, value: int) -> None:
        self.out.write(b"l")
        self.out.write(b"+" if value >= 0 else b"-")
        magnitude = abs(value)
        data = magnitude.to_bytes((magnitude.bit_length() + 15) // 16 * 2, "little")
        self.long(len(data) // 2)
        self.out.write(data)


def _format_float(value: float) -> bytes:
    if value != value:
        return b"nan"
    if value in (float("inf"), float("-inf")):
        return b"inf" if value > 0 else b"-inf"
    text = repr(value)
    if text.endswith(".0"):
        text = text[:-2]
    return text.encode("ascii")


def dumps(obj: Any) -> bytes:
    writer = _Writer()
    writer.out.write(_HEADER)
    writer.dump(obj)
    return writer.out.getvalue()


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0
        self.symbols: List[Symbol] = []
        self.objects: List[Any] = []

    def read(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise MarshalError("Marshal data too short")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def byte(self) -> int:
        return self.read(1)[0]

    def long(self) -> int:
        c = struct.unpack("b", self.read(1))[0]
        if c == 0:
            return 0
        if 5 <= c <= 127:
            return c - 5
        if -128 <= c <= -5:
            return c + 5
        if c > 0:
            return int.from_bytes(self.read(c), "little")
        return int.from_bytes(self.read(-c), "little") - (1 << (8 * -c))

    def raw(self) -> bytes:
        return self.read(self.long())

    def symbol(self) -> Symbol:
        kind = self.read(1)
        if kind == b":":
            return self._symbol_body()
        if kind == b";":
            return self._symlink()
        raise MarshalError(f"Expected symbol, got {kind!r}")

    def _symbol_body(self) -> Symbol:
        sym = Symbol(self.raw().decode("utf-8", errors="surrogateescape"))
        self.symbols.append(sym)
        return sym

    def _symlink(self) -> Symbol:
        index = self.long()
        try:
            return self.symbols[index]
        except IndexError:
            raise MarshalError(f"Bad symbol link {index}") from None

    def _register(self, obj: Any) -> int:
        self.objects.append(obj)
        return len(self.objects) - 1

    def ivar_pairs(self) -> Dict[str, Any]:
        count = self.long()
        result: Dict[str, Any] = {}
        for _ in range(count):
            key = self.symbol()
            result[str(key)] = self.load()
        return result

    def load(self) -> Any:
        kind = self.read(1)
        if kind == b"0":
            return None
        if kind == b"T":
            return True
        if kind == b"F":
            return False
        if kind == b"i":
            return self.long()
        if kind == b":":
            return self._symbol_body()
        if kind == b";":
            return self._symlink()
        if kind == b"@":
            index = self.long()
            try:
                return self.objects[index]
            except IndexError:
                raise MarshalError(f"Bad object link {index}") from None
        if kind == b"I":
            return self._with_ivars()
        if kind == b"\"":
            value = self.raw()
            self._register(value)
            return value
        if kind == b"f":
            value = _parse_float(self.raw())
            self._register(value)
            return value
        if kind == b"l":
            sign = self.read(1)
            value = int.from_bytes(self.read(self.long() * 2), "little")
            value = -value if sign == b"-" else value
            self._register(value)
            return value
        if kind == b"[":
            result: List[Any] = []
            self._register(result)
            for _ in range(self.long()):
                result.append(self.load())
            return result
        if kind in (b"{", b"}"):
            mapping: Dict[Any, Any] = {}
            self._register(mapping)
            for _ in range(self.long()):
                key = self.load()
                mapping[_hashable(key)] = self.load()
            if kind == b"}":
                self.load()  # default value; not kept
            return mapping
        if kind == b"U":
            name = str(self.symbol())
            obj = UserMarshal(name, None)
            self._register(obj)
            obj.data = self.load()
            return obj
        if kind == b"u":
            name = str(self.symbol())
            obj = UserDump(name, self.raw())
            self._register(obj)
            return obj
        if kind == b"o":
            name = str(self.symbol())
            obj = RubyObject(name)
            self._register(obj)
            obj.ivars = self.ivar_pairs()
            return obj
        if kind == b"e":
            self.symbol()  # extended module; ignored
            return self.load()
        raise MarshalError(f"Unsupported Marshal type {kind!r} at offset {self.pos - 1}")

    def _with_ivars(self) -> Any:
        kind = self.data[self.pos:self.pos + 1]
        if kind == b"\"":
            self.pos += 1
            raw = self.raw()
            index = self._register(raw)
            ivars = self.ivar_pairs()
            value = _decode_string(raw, ivars)
            self.objects[index] = value
            return value
        value = self.load()
        ivars = self.ivar_pairs()
        if isinstance(value, UserDump):
            value.ivars = ivars
        return value


def _decode_string(raw: bytes, ivars: Dict[str, Any]) -> Any:
    if "E" in ivars:
        return raw.decode("utf-8" if ivars["E"] else "ascii", errors="surrogateescape")
    encoding = ivars.get("encoding")
    if encoding:
        name = encoding.decode("ascii") if isinstance(encoding, bytes) else str(encoding)
        try:
            return raw.decode(name)
        except (LookupError, UnicodeDecodeError):
            return raw
    return raw


def _hashable(key: Any) -> Any:
    if isinstance(key, list):
        return tuple(_hashable(k) for k in key)
    return key


def _parse_float(raw: bytes) -> float:
    text = raw.split(b"\x00", 1)[0].decode("ascii")
    if text == "nan":
        return float("nan")
    if text == "inf":
        return float("inf")
    if text == "-inf":
        return float("-inf")
    try:
        return float(text)
    except ValueError:
        raise MarshalError(f"Bad float {text!r}") from None


def loads(data: bytes) -> Any:
    if len(data) < 2:
        raise MarshalError("Marshal data too short")
    major, minor = data[0], data[1]
    if major != MAJOR_VERSION or minor > MINOR_VERSION:
        raise MarshalError(f"Incompatible Marshal format {major}.{minor}")
    reader = _Reader(data)
    reader.pos = 2
    return reader.load()
