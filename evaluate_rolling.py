import argparse
import enum
import logging
import sys
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Iterator, List, Mapping, Optional, Tuple, TypeAlias, Union

import numpy as np
import numpy.typing as npt

from rollers import (
    WINDOW_SIZE,
    Adler32Roller,
    Bozo32Roller,
    Buzhash32Roller,
    Buzhash64Roller,
    CRC32Roller,
    RabinKarp64Roller,
    Roller,
    RollerFactory,
    RollSumRoller,
    make_factory,
)

logger = logging.getLogger("evaluate_rolling")

# Digests as produced by one pass, truncated to DIGEST_BITS.
Digests: TypeAlias = npt.NDArray[np.uint32]
# Per-bit (1D) or per-bit-pair (2D) occurrence counts.
Counters: TypeAlias = npt.NDArray[np.int64]
BitPercent: TypeAlias = Tuple[int, float]
PairPercent: TypeAlias = Tuple[int, int, float]

DIGEST_BITS = 32
DIGEST_MASK = (1 << DIGEST_BITS) - 1
SEED_MASK = (1 << 64) - 1

SAMPLE_SIZE = 1024 * 1024
AVALANCHE_INPUT_SIZE = 256
CHUNK_SIZE = 1 << 16

# Fractions strictly outside this band are reported.
TOLERANCE_LOW = 0.49
TOLERANCE_HIGH = 0.51

# Watchdog applied to experimental algorithms when no --timeout is given.
EXPERIMENTAL_TIMEOUT = 60.0

_SHIFTS = np.arange(DIGEST_BITS, dtype=np.uint32)
_UPPER = np.triu_indices(DIGEST_BITS, k=1)


class EvaluationError(Exception):
    """Base class for every error the evaluator reports to the user."""


class UnknownAlgorithm(EvaluationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown algorithm {name!r}")
        self.name = name


class RandomSourceError(EvaluationError):
    """The sample buffer could not be generated. Fatal for the whole run."""


class Phase(enum.Enum):
    TIMING = enum.auto()
    BIAS = enum.auto()
    AVALANCHE = enum.auto()


class AlgorithmTimeout(EvaluationError):
    def __init__(self, name: str, phase: Phase, limit: float) -> None:
        super().__init__(
            f"{phase.name.lower()} phase of {name!r} exceeded {limit:g}s; "
            "the algorithm may not terminate"
        )
        self.name = name
        self.phase = phase
        self.limit = limit


class Watchdog:
    """Cooperative per-phase deadline.

    The deadline is only checked between chunks and between avalanche trials,
    so a single roll() or digest() call that never returns cannot be
    interrupted. It catches adapters that are pathologically slow or loop for
    a long but finite time.
    """

    def __init__(self, limit: Optional[float], name: str = "") -> None:
        if limit is not None and limit <= 0:
            raise ValueError(f"timeout must be positive, got {limit}")
        self.limit = limit
        self.name = name
        self.phase = Phase.TIMING
        self.deadline: Optional[float] = None

    def start(self, phase: Phase) -> None:
        """Begin timing `phase`; the deadline restarts from now."""
        self.phase = phase
        if self.limit is not None:
            self.deadline = time.perf_counter() + self.limit

    def check(self) -> None:
        """Raise AlgorithmTimeout once the current phase is past its deadline."""
        if self.limit is None or self.deadline is None:
            return
        if time.perf_counter() > self.deadline:
            raise AlgorithmTimeout(self.name, self.phase, self.limit)


class Registry:
    """Immutable mapping from algorithm name to a zero-argument Roller factory."""

    def __init__(self, factories: Mapping[str, RollerFactory]) -> None:
        self._factories = MappingProxyType(dict(factories))

    def names(self) -> List[str]:
        """Registered names, in registration order."""
        return list(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def __iter__(self) -> Iterator[str]:
        return iter(self._factories)

    def __len__(self) -> int:
        return len(self._factories)

    def factory(self, name: str) -> RollerFactory:
        """Look up the factory for `name`, raising UnknownAlgorithm if absent."""
        try:
            return self._factories[name]
        except KeyError:
            raise UnknownAlgorithm(name) from None

    def resolve(
        self, names: Iterable[str]
    ) -> Tuple[List[Tuple[str, RollerFactory]], List[UnknownAlgorithm]]:
        """Split requested names into (name, factory) pairs and unknown-name errors."""
        resolved: List[Tuple[str, RollerFactory]] = []
        unknown: List[UnknownAlgorithm] = []
        for name in names:
            try:
                resolved.append((name, self.factory(name)))
            except UnknownAlgorithm as e:
                unknown.append(e)
        return resolved, unknown

    def extended(self, other: "Registry") -> "Registry":
        """Return a new registry with `other`'s entries added (overriding on clash)."""
        return Registry({**self._factories, **other._factories})


def default_registry(window_size: int = WINDOW_SIZE) -> Registry:
    """The algorithms evaluated by --all, each with a zero-filled window of `window_size`."""
    return Registry({
        "rollsum": make_factory(RollSumRoller, window_size),
        "adler32": make_factory(Adler32Roller, window_size),
        "bozo32": make_factory(Bozo32Roller, window_size),
        "buzhash32": make_factory(Buzhash32Roller, window_size),
        "buzhash64": make_factory(Buzhash64Roller, window_size),
        "crc32": make_factory(CRC32Roller, window_size),
    })


def experimental_registry(window_size: int = WINDOW_SIZE) -> Registry:
    """Algorithms kept out of the default set because they were seen to hang."""
    return Registry({
        "rabinkarp64": make_factory(RabinKarp64Roller, window_size),
    })


def sample_buffer(seed: int, size: int = SAMPLE_SIZE) -> bytes:
    """Generate `size` pseudorandom bytes, reproducible for a given seed.

    Any 64-bit seed is accepted; negative seeds are folded into the unsigned range.
    """
    if size < 0:
        raise RandomSourceError(f"cannot generate a buffer of {size} bytes")
    try:
        rng = np.random.default_rng(seed & SEED_MASK)
        data = rng.bytes(size)
    except (ValueError, TypeError, MemoryError) as e:
        raise RandomSourceError(f"random source failed for seed {seed}: {e}") from e
    if len(data) != size:
        raise RandomSourceError(f"random source returned {len(data)} of {size} bytes")
    return data


def unpack_bits(digests: Digests) -> npt.NDArray[np.uint8]:
    """Return an (n, DIGEST_BITS) array; column i is bit i (LSB first) of each digest."""
    return ((digests[:, np.newaxis] >> _SHIFTS) & 1).astype(np.uint8)


def digest_chunks(
    roller: Roller,
    data: bytes,
    watchdog: Optional[Watchdog] = None,
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[Digests]:
    """Roll every byte of data, yielding the digest after each byte in chunks."""
    roll = roller.roll
    digest = roller.digest
    for start in range(0, len(data), chunk_size):
        block: List[int] = []
        append = block.append
        for byte in data[start:start + chunk_size]:
            roll(byte)
            append(digest() & DIGEST_MASK)
        if watchdog is not None:
            watchdog.check()
        yield np.array(block, dtype=np.uint32)


def final_digest(roller: Roller, data: Iterable[int]) -> int:
    """Roll all of `data` through `roller` and return the truncated final digest."""
    for byte in data:
        roller.roll(byte)
    return roller.digest() & DIGEST_MASK


def outside_tolerance(fraction: float) -> bool:
    """True when `fraction` lies strictly outside [TOLERANCE_LOW, TOLERANCE_HIGH].

    The band is closed, so exactly 0.49 or 0.51 is not flagged.
    """
    return fraction < TOLERANCE_LOW or fraction > TOLERANCE_HIGH


def flagged_bits(counts: Counters, total: int) -> List[BitPercent]:
    """Returns (bit, percentage) for every bit whose count/total is out of tolerance."""
    flagged = []
    for i, count in enumerate(counts):
        fraction = int(count) / total
        if outside_tolerance(fraction):
            flagged.append((i, 100.0 * fraction))
    return flagged


def flagged_pairs(counts: Counters, total: int) -> List[PairPercent]:
    """Like flagged_bits, over the strictly upper triangle of a pair table."""
    n = counts.shape[0]
    flagged = []
    for i in range(n - 1):
        for j in range(i + 1, n):
            fraction = int(counts[i, j]) / total
            if outside_tolerance(fraction):
                flagged.append((i, j, 100.0 * fraction))
    return flagged


@dataclass(frozen=True)
class TimingReport:
    samples: int
    elapsed: float  # seconds
    checksum: int  # XOR of every digest produced during the pass


@dataclass(frozen=True, eq=False)
class BiasReport:
    samples: int
    zeroes: Counters
    correlations: Counters
    biased_bits: List[BitPercent]
    correlated_pairs: List[PairPercent]


@dataclass(frozen=True, eq=False)
class AvalancheReport:
    reference_digest: int
    trials: int
    differed: Counters
    deviant_bits: List[BitPercent]


@dataclass(frozen=True, eq=False)
class AlgorithmReport:
    name: str
    timing: TimingReport
    bias: BiasReport
    avalanche: AvalancheReport


class BiasAnalyzer:
    """Accumulates per-bit zero counts and per-bit-pair equality counts.

    correlations[i, j] is only ever written for i < j; the diagonal and the
    lower triangle stay zero.
    """

    def __init__(self) -> None:
        self.samples = 0
        self.zeroes: Counters = np.zeros(DIGEST_BITS, dtype=np.int64)
        self.correlations: Counters = np.zeros((DIGEST_BITS, DIGEST_BITS), dtype=np.int64)
        self.reported = False

    def update(self, digests: Digests) -> None:
        if self.reported:
            raise RuntimeError("BiasAnalyzer has already reported")
        n = len(digests)
        if n == 0:
            return
        bits = unpack_bits(digests)
        ones = bits.sum(axis=0, dtype=np.int64)

        # both[i, j] = number of digests with bits i and j both set. Counts
        # stay far below 2**53, so the float product is exact.
        fbits = bits.astype(np.float64)
        both = (fbits.T @ fbits).astype(np.int64)

        # Equal means both zero or both one.
        equal = n - ones[:, np.newaxis] - ones[np.newaxis, :] + 2 * both

        self.zeroes += n - ones
        self.correlations[_UPPER] += equal[_UPPER]
        self.samples += n

    def report(self) -> BiasReport:
        if self.samples == 0:
            raise ValueError("no digests were accumulated")
        self.reported = True
        return BiasReport(
            samples=self.samples,
            zeroes=self.zeroes.copy(),
            correlations=self.correlations.copy(),
            biased_bits=flagged_bits(self.zeroes, self.samples),
            correlated_pairs=flagged_pairs(self.correlations, self.samples),
        )


class AvalancheAnalyzer:
    """Counts, per output bit, how many perturbed digests differ from the reference."""

    def __init__(self, reference_digest: int) -> None:
        self.reference_digest = reference_digest & DIGEST_MASK
        self.trials = 0
        self.differed: Counters = np.zeros(DIGEST_BITS, dtype=np.int64)
        self.reported = False

    def update(self, digests: Digests) -> None:
        if self.reported:
            raise RuntimeError("AvalancheAnalyzer has already reported")
        diffs = digests ^ np.uint32(self.reference_digest)
        self.differed += unpack_bits(diffs).sum(axis=0, dtype=np.int64)
        self.trials += len(digests)

    def report(self) -> AvalancheReport:
        if self.trials == 0:
            raise ValueError("no avalanche trials were accumulated")
        self.reported = True
        return AvalancheReport(
            reference_digest=self.reference_digest,
            trials=self.trials,
            differed=self.differed.copy(),
            deviant_bits=flagged_bits(self.differed, self.trials),
        )


def measure_timing(
    factory: RollerFactory, data: bytes, watchdog: Optional[Watchdog] = None
) -> TimingReport:
    """Time one roll+digest pass over data on a fresh roller."""
    roller = factory()
    roll = roller.roll
    digest = roller.digest
    checksum = 0
    if watchdog is not None:
        watchdog.start(Phase.TIMING)
    start = time.perf_counter()
    for offset in range(0, len(data), CHUNK_SIZE):
        for byte in data[offset:offset + CHUNK_SIZE]:
            roll(byte)
            checksum ^= digest()
        if watchdog is not None:
            watchdog.check()
    elapsed = time.perf_counter() - start
    return TimingReport(samples=len(data), elapsed=elapsed, checksum=checksum & DIGEST_MASK)


def measure_bias(
    factory: RollerFactory, data: bytes, watchdog: Optional[Watchdog] = None
) -> BiasReport:
    """Bias and pair-correlation pass over `data` on a fresh roller.

    Args:
        factory: Builds the roller under test.
        data: Sample bytes; one digest is taken after each byte.
        watchdog: Optional deadline, restarted for this phase.

    Returns:
        A BiasReport with raw counters and the out-of-tolerance bits and pairs.
    """
    analyzer = BiasAnalyzer()
    if watchdog is not None:
        watchdog.start(Phase.BIAS)
    for digests in digest_chunks(factory(), data, watchdog):
        analyzer.update(digests)
    return analyzer.report()


def measure_avalanche(
    factory: RollerFactory, reference: bytes, watchdog: Optional[Watchdog] = None
) -> AvalancheReport:
    """Strict avalanche test over every single-bit flip of `reference`.

    Rolling hashes are path dependent, so every one of the len(reference) * 8
    trials replays the whole perturbed input through a fresh roller.
    """
    if not reference:
        raise ValueError("avalanche reference input is empty")
    reference = bytes(reference)
    if watchdog is not None:
        watchdog.start(Phase.AVALANCHE)

    analyzer = AvalancheAnalyzer(final_digest(factory(), reference))

    perturbed = bytearray(reference)
    for j, byte in enumerate(reference):
        digests = np.empty(8, dtype=np.uint32)
        for k in range(8):
            perturbed[j] = byte ^ (1 << k)
            digests[k] = final_digest(factory(), perturbed)
            if watchdog is not None:
                watchdog.check()
        perturbed[j] = byte
        analyzer.update(digests)
    return analyzer.report()


def evaluate(
    name: str,
    factory: RollerFactory,
    data: bytes,
    timeout: Optional[float] = None,
) -> AlgorithmReport:
    """Run the timing, bias and avalanche phases, each on fresh rollers."""
    if len(data) < AVALANCHE_INPUT_SIZE:
        raise ValueError(
            f"sample buffer must hold at least {AVALANCHE_INPUT_SIZE} bytes, got {len(data)}"
        )
    watchdog = Watchdog(timeout, name)

    logger.debug("%s: timing pass over %d bytes", name, len(data))
    timing = measure_timing(factory, data, watchdog)
    logger.debug("%s: timing pass took %.3fs", name, timing.elapsed)

    logger.debug("%s: bias/correlation pass over %d bytes", name, len(data))
    bias = measure_bias(factory, data, watchdog)

    logger.debug("%s: avalanche over %d trials", name, 8 * AVALANCHE_INPUT_SIZE)
    avalanche = measure_avalanche(factory, data[:AVALANCHE_INPUT_SIZE], watchdog)

    return AlgorithmReport(name=name, timing=timing, bias=bias, avalanche=avalanche)


def evaluate_algorithms(
    names: Iterable[str],
    registry: Registry,
    data: bytes,
    timeout: Optional[float] = None,
    timeouts: Optional[Mapping[str, float]] = None,
) -> Iterator[Tuple[str, Union[AlgorithmReport, EvaluationError]]]:
    """Evaluate each named algorithm in turn.

    All names are validated before any measurement: unknown names are yielded
    first as UnknownAlgorithm errors. A timeout only aborts its own algorithm.
    `timeouts` overrides `timeout` per name.
    """
    resolved, unknown = registry.resolve(names)
    for error in unknown:
        yield error.name, error
    timeouts = timeouts or {}
    for name, factory in resolved:
        try:
            yield name, evaluate(name, factory, data, timeouts.get(name, timeout))
        except AlgorithmTimeout as e:
            logger.debug("%s: %s", name, e)
            yield name, e


def format_report(report: AlgorithmReport) -> str:
    lines = [
        f"  Elapsed time to roll/digest {report.timing.samples} bytes of random data: "
        f"{report.timing.elapsed:.6f}s",
        "  Bits departing from 50% likelihood of being zero:",
    ]
    for i, pct in report.bias.biased_bits:
        lines.append(f"    Bit {i} is zero {pct:.1f}% of the time")
    lines.append("  Bit-pair correlations departing from 50% likelihood:")
    for i, j, pct in report.bias.correlated_pairs:
        lines.append(f"    Bit {i} == bit {j} {pct:.1f}% of the time")
    lines.append("  On 1-bit input change, digest bits departing from 50% likelihood of change:")
    for i, pct in report.avalanche.deviant_bits:
        lines.append(f"    Bit {i} varied {pct:.1f}% of the time")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="evaluate-rolling",
        description=(
            "Evaluate rolling hash algorithms: throughput, per-bit bias, "
            "bit-pair correlation and strict avalanche."
        ),
    )
    parser.add_argument("names", nargs="*", metavar="NAME", help="algorithms to evaluate")
    parser.add_argument("--all", action="store_true", help="evaluate all hashes")
    parser.add_argument("--seed", type=int, default=None, help="RNG seed (default: current time)")
    parser.add_argument(
        "--sample-size", type=int, default=SAMPLE_SIZE,
        help=f"bytes of random data for the timing and bias passes (default: {SAMPLE_SIZE})",
    )
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="abort an algorithm when one of its phases runs longer than this many seconds",
    )
    parser.add_argument(
        "--experimental", action="store_true",
        help="also register algorithms suspected of hanging (watchdog enabled)",
    )
    parser.add_argument("--list", action="store_true", help="list registered algorithms and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="log progress to stderr")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    registry = default_registry()
    timeouts = {}
    if args.experimental:
        experimental = experimental_registry()
        registry = registry.extended(experimental)
        limit = args.timeout if args.timeout is not None else EXPERIMENTAL_TIMEOUT
        timeouts = {name: limit for name in experimental}

    if args.list:
        for name in registry:
            print(name)
        return 0
    if not args.all and not args.names:
        parser.error("name one or more algorithms, or use --all")
    if args.sample_size < AVALANCHE_INPUT_SIZE:
        parser.error(f"--sample-size must be at least {AVALANCHE_INPUT_SIZE}")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")

    seed = args.seed if args.seed is not None else int(time.time())
    print(f"Using RNG seed {seed}")

    try:
        data = sample_buffer(seed, args.sample_size)
    except RandomSourceError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    names = registry.names() if args.all else args.names
    failures = 0
    for name, result in evaluate_algorithms(names, registry, data, args.timeout, timeouts):
        if isinstance(result, EvaluationError):
            print(f"{name}: error: {result}", file=sys.stderr)
            failures += 1
            continue
        print(f"{name}:")
        print(format_report(result))
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
