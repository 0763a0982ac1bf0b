import abc
import zlib
from functools import lru_cache
from typing import Callable, Tuple, Type, TypeAlias

import numpy as np

# Rolling window used by every bundled adapter.
WINDOW_SIZE = 64

MASK32 = (1 << 32) - 1
MASK64 = (1 << 64) - 1


class Roller(abc.ABC):
    """A stateful rolling checksum.

    A Roller is always handed out fully initialized (window pre-filled), so
    digest() is meaningful straight after construction.
    """

    @abc.abstractmethod
    def roll(self, byte: int) -> None:
        """Consume one byte, evicting the oldest byte of the window."""

    @abc.abstractmethod
    def digest(self) -> int:
        """Return the current checksum without mutating state."""


# Zero-argument constructor returning a ready Roller
RollerFactory: TypeAlias = Callable[[], Roller]


def make_factory(cls: Type["WindowRoller"], window_size: int = WINDOW_SIZE) -> RollerFactory:
    """Bind a window size to an adapter class."""
    if window_size <= 0:
        raise ValueError(f"window_size must be positive, got {window_size}")

    def factory() -> Roller:
        return cls(window_size)

    factory.__name__ = f"new_{cls.__name__}"
    return factory


class WindowRoller(Roller):
    """Base for adapters that keep a circular window of the last n bytes."""

    def __init__(self, window_size: int) -> None:
        self.window = bytearray(window_size)
        self.pos = 0  # index of the oldest byte, next to be overwritten
        self.write(bytes(window_size))

    def write(self, data: bytes) -> None:
        """Reset the state to the checksum of `data` (must be one window long)."""
        if len(data) != len(self.window):
            raise ValueError(f"expected {len(self.window)} bytes, got {len(data)}")
        self.window[:] = data
        self.pos = 0
        self._reset()

    def roll(self, byte: int) -> None:
        out = self.window[self.pos]
        self.window[self.pos] = byte
        self.pos += 1
        if self.pos == len(self.window):
            self.pos = 0
        self._slide(out, byte)

    def ordered_window(self) -> bytes:
        return bytes(self.window[self.pos:] + self.window[:self.pos])

    @abc.abstractmethod
    def _reset(self) -> None:
        ...

    @abc.abstractmethod
    def _slide(self, out: int, byte: int) -> None:
        ...


# adler32

ADLER_MOD = 65521


class Adler32Roller(WindowRoller):
    def _reset(self) -> None:
        self.a = (1 + sum(self.window)) % ADLER_MOD
        n = len(self.window)
        self.b = (n + sum((n - i) * c for i, c in enumerate(self.window))) % ADLER_MOD

    def _slide(self, out: int, byte: int) -> None:
        # a' = a - out + in ; b' = b - n*out + a' - 1
        self.a = (self.a - out + byte) % ADLER_MOD
        self.b = (self.b - len(self.window) * out + self.a - 1) % ADLER_MOD

    def digest(self) -> int:
        return (self.b << 16) | self.a


# bozo32: plain polynomial hash mod 2^32, no irreducible modulus.

BOZO_MULTIPLIER = 65521


class Bozo32Roller(WindowRoller):
    def _reset(self) -> None:
        self.a_pow_n = pow(BOZO_MULTIPLIER, len(self.window), 1 << 32)
        value = 0
        for c in self.window:
            value = (value * BOZO_MULTIPLIER + c) & MASK32
        self.value = value

    def _slide(self, out: int, byte: int) -> None:
        self.value = (self.value * BOZO_MULTIPLIER + byte - out * self.a_pow_n) & MASK32

    def digest(self) -> int:
        return self.value


# buzhash (cyclic polynomial)

BUZHASH_TABLE_SEED = 0x6275_7A68


@lru_cache(maxsize=None)
def buzhash_table(nbits: int) -> Tuple[int, ...]:
    """A fixed table of 256 pseudorandom nbits-wide words."""
    rng = np.random.default_rng(BUZHASH_TABLE_SEED + nbits)
    words = rng.integers(0, 2**nbits, size=256, dtype=np.uint64)
    return tuple(int(w) for w in words)


def rotl(x: int, n: int, nbits: int) -> int:
    n %= nbits
    mask = (1 << nbits) - 1
    return ((x << n) | (x >> (nbits - n))) & mask


class BuzhashRoller(WindowRoller):
    NBITS = 32

    def _reset(self) -> None:
        self.table = buzhash_table(self.NBITS)
        self.shift = len(self.window) % self.NBITS
        value = 0
        for c in self.window:
            value = rotl(value, 1, self.NBITS) ^ self.table[c]
        self.value = value

    def _slide(self, out: int, byte: int) -> None:
        # The outgoing byte has been rotated once per position it travelled.
        self.value = (
            rotl(self.value, 1, self.NBITS)
            ^ rotl(self.table[out], self.shift, self.NBITS)
            ^ self.table[byte]
        )

    def digest(self) -> int:
        return self.value


class Buzhash32Roller(BuzhashRoller):
    NBITS = 32


class Buzhash64Roller(BuzhashRoller):
    NBITS = 64


# crc32 (not strictly a "rolling" hash: recomputed over the window)

class CRC32Roller(WindowRoller):
    def _reset(self) -> None:
        pass

    def _slide(self, out: int, byte: int) -> None:
        pass

    def digest(self) -> int:
        return zlib.crc32(self.ordered_window())


# rollsum, as used by bup

ROLLSUM_CHAR_OFFSET = 31


class RollSumRoller(WindowRoller):
    def _reset(self) -> None:
        n = len(self.window)
        self.s1 = (n * ROLLSUM_CHAR_OFFSET) & MASK32
        self.s2 = (n * (n - 1) * ROLLSUM_CHAR_OFFSET) & MASK32
        for c in self.window:
            # Rebuild from the zero state by pushing each byte through.
            self._slide(0, c)

    def _slide(self, out: int, byte: int) -> None:
        self.s1 = (self.s1 + byte - out) & MASK32
        self.s2 = (self.s2 + self.s1 - len(self.window) * (out + ROLLSUM_CHAR_OFFSET)) & MASK32

    def digest(self) -> int:
        return ((self.s1 << 16) | (self.s2 & 0xFFFF)) & MASK32


# rabinkarp64: Rabin fingerprint over GF(2)

# Irreducible polynomial of degree 53.
RABIN_POLYNOMIAL = 0x3DA3358B4DC173


def pol_deg(p: int) -> int:
    return p.bit_length() - 1


def pol_mod(x: int, p: int) -> int:
    """x mod p for polynomials over GF(2) encoded as ints."""
    d = pol_deg(p)
    while x and pol_deg(x) >= d:
        x ^= p << (pol_deg(x) - d)
    return x


def pol_append_byte(h: int, byte: int, p: int) -> int:
    return pol_mod((h << 8) | byte, p)


@lru_cache(maxsize=None)
def rabin_tables(p: int, window_size: int) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    """Precompute the (out, mod) tables for a polynomial and window.

    out[b] is the fingerprint of b followed by window_size - 1 zero bytes,
    so XORing it removes b once it has reached the oldest window slot.
    mod[b] clears the 8 bits pushed above the degree by a byte append and
    folds in their reduction.
    """
    out = []
    for b in range(256):
        h = pol_append_byte(0, b, p)
        for _ in range(window_size - 1):
            h = pol_append_byte(h, 0, p)
        out.append(h)

    k = pol_deg(p)
    mod = [pol_mod(b << k, p) | (b << k) for b in range(256)]
    return tuple(out), tuple(mod)


class RabinKarp64Roller(WindowRoller):
    def _reset(self) -> None:
        self.out_table, self.mod_table = rabin_tables(RABIN_POLYNOMIAL, len(self.window))
        self.shift = pol_deg(RABIN_POLYNOMIAL) - 8
        value = 0
        for c in self.ordered_window():
            value = pol_append_byte(value, c, RABIN_POLYNOMIAL)
        self.value = value

    def _slide(self, out: int, byte: int) -> None:
        value = self.value ^ self.out_table[out]
        index = value >> self.shift
        self.value = ((value << 8) | byte) ^ self.mod_table[index]

    def digest(self) -> int:
        return self.value & MASK64
