"""
Packed timelocks for EVM escrows.

The escrow contracts store the whole seven-stage schedule in one uint256.
Layout, most significant first::

    [deployedAt][DstCancellation][DstPublicWithdrawal][DstWithdrawal]
    [SrcPublicCancellation][SrcCancellation][SrcPublicWithdrawal][SrcWithdrawal]

Each field is 32 bits. A stage field holds ``timestamp - deployedAt``.

The factory overwrites ``deployedAt`` with the block timestamp when the
escrow is deployed, keeping the offsets. Anything that rebuilds the
immutables later (claim, refund) must therefore ``rebase`` onto the
on-chain deployment timestamp, not the one assumed at creation time.
"""

from enum import IntEnum
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional

from ..errors import RangeError, ValidationError

DEPLOYED_AT_OFFSET = 224
STAGE_BITS = 32
UINT32_MAX = 0xFFFFFFFF
UINT256_MAX = (1 << 256) - 1


class Stage(IntEnum):
    SRC_WITHDRAWAL = 0
    SRC_PUBLIC_WITHDRAWAL = 1
    SRC_CANCELLATION = 2
    SRC_PUBLIC_CANCELLATION = 3
    DST_WITHDRAWAL = 4
    DST_PUBLIC_WITHDRAWAL = 5
    DST_CANCELLATION = 6


@dataclass
class Timelocks:
    """Unpacked schedule: absolute Unix timestamps per stage."""
    deployed_at: int
    stages: Dict[Stage, int] = field(default_factory=dict)

    def get(self, stage: Stage) -> Optional[int]:
        return self.stages.get(stage)

    def offsets(self) -> Dict[Stage, int]:
        return {s: ts - self.deployed_at for s, ts in self.stages.items()}

    def to_dict(self) -> Dict[str, int]:
        data = {"deployed_at": self.deployed_at}
        for stage, ts in sorted(self.stages.items()):
            data[stage.name.lower()] = ts
        return data


def parse_stage(value) -> Stage:
    """Accept a Stage, its index, or a name like "dst_cancellation"."""
    if isinstance(value, Stage):
        return value
    if isinstance(value, int):
        return Stage(value)
    try:
        return Stage[str(value).upper()]
    except KeyError:
        raise ValidationError(f"Unknown timelock stage: {value}")


def _check_deployed_at(deployed_at: int):
    if deployed_at < 0 or deployed_at > UINT32_MAX:
        raise RangeError(f"deployedAt {deployed_at} does not fit in uint32")


def pack(deployed_at: int, stages: Mapping) -> int:
    """
    Pack absolute stage timestamps relative to ``deployed_at``.

    Args:
        deployed_at: Reference timestamp, stored in the top 32 bits
        stages: Stage (or stage name) -> absolute Unix timestamp

    Returns:
        Packed uint256

    Raises:
        RangeError: if an offset is negative or exceeds uint32
    """
    deployed_at = int(deployed_at)
    _check_deployed_at(deployed_at)

    packed = deployed_at << DEPLOYED_AT_OFFSET
    for key, timestamp in stages.items():
        if timestamp is None:
            continue
        stage = parse_stage(key)
        offset = int(timestamp) - deployed_at
        if offset < 0 or offset > UINT32_MAX:
            raise RangeError(
                f"Timelock offset for stage {stage.name} ({offset}) is outside uint32",
                stage=stage.name,
                offset=offset,
            )
        packed |= offset << (stage * STAGE_BITS)
    return packed


def unpack(packed: int, deployed_at: Optional[int] = None,
           stages: Optional[Iterable] = None) -> Timelocks:
    """
    Unpack a packed schedule into absolute timestamps.

    A stage with a zero offset is read as unset, unless it is named in
    ``stages``; callers that know which stages they packed pass them to
    get zero offsets back.

    Args:
        packed: Packed uint256
        deployed_at: Override for the reference timestamp (e.g. the
            on-chain deployment block time)
        stages: Stages to report even when their offset is zero
    """
    packed = int(packed)
    if packed < 0 or packed > UINT256_MAX:
        raise RangeError(f"Packed timelocks {packed} do not fit in uint256")

    if deployed_at is None:
        deployed_at = (packed >> DEPLOYED_AT_OFFSET) & UINT32_MAX
    explicit = {parse_stage(s) for s in (stages or ())}

    result = Timelocks(deployed_at=int(deployed_at))
    for stage in Stage:
        offset = (packed >> (stage * STAGE_BITS)) & UINT32_MAX
        if offset != 0 or stage in explicit:
            result.stages[stage] = result.deployed_at + offset
    return result


def rebase(packed: int, deployed_at: int) -> int:
    """Replace the deployedAt field, keeping every stage offset."""
    deployed_at = int(deployed_at)
    _check_deployed_at(deployed_at)
    mask = UINT32_MAX << DEPLOYED_AT_OFFSET
    return (int(packed) & ~mask & UINT256_MAX) | (deployed_at << DEPLOYED_AT_OFFSET)


def get_deployed_at(packed: int) -> int:
    return (int(packed) >> DEPLOYED_AT_OFFSET) & UINT32_MAX


def stage_time(packed: int, stage: Stage, deployed_at: Optional[int] = None) -> int:
    """Absolute timestamp of one stage (deployedAt + offset)."""
    if deployed_at is None:
        deployed_at = get_deployed_at(packed)
    offset = (int(packed) >> (Stage(stage) * STAGE_BITS)) & UINT32_MAX
    return int(deployed_at) + offset
