"""
Pattern 服務：正規化、canonical 序列化、commitment hash

純計算邏輯，不涉及狀態轉換

Commitment 格式：
    sha256("commit_input:v1|round:<id>|nonce:<n>|" + serialize_pattern_canonical(pattern))

Canonical 格式：
    pattern:v1;len:16;bpm:120;tracks:kick[1.100,0.100,...]|snare[...]|...
"""
import hashlib
import math
from collections.abc import Mapping
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from models import TrackId
from schemas import (
    MAX_BPM,
    MIN_BPM,
    PATTERN_VERSION,
    STEPS_PER_PATTERN,
    TRACK_ORDER,
    Pattern,
    StepState,
    TrackPattern,
)

COMMIT_INPUT_VERSION = "v1"
DEFAULT_VELOCITY = 100

PatternInput = Union[Pattern, Mapping]


def create_empty_pattern(bpm: int = 120) -> Pattern:
    """建立全部 step 都關閉的 pattern"""
    return Pattern(
        version=PATTERN_VERSION,
        length=STEPS_PER_PATTERN,
        bpm=bpm,
        tracks=[
            TrackPattern(
                id=track_id,
                steps=[StepState() for _ in range(STEPS_PER_PATTERN)],
            )
            for track_id in TRACK_ORDER
        ],
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize_step(step: Any) -> StepState:
    """缺少或不合法的 step 補成 {active: False, velocity: 100}，velocity 截斷並夾在 0..127"""
    if isinstance(step, StepState):
        step = step.model_dump()
    if not isinstance(step, Mapping):
        return StepState(active=False, velocity=DEFAULT_VELOCITY)

    velocity = step.get("velocity")
    if _is_number(velocity) and math.isfinite(velocity):
        velocity = max(0, min(127, int(velocity)))
    else:
        velocity = DEFAULT_VELOCITY

    return StepState(active=bool(step.get("active")), velocity=velocity)


def normalize_pattern(pattern: PatternInput) -> Pattern:
    """
    正規化 pattern

    流程：
    1. 檢查 version / length / bpm
    2. 依 canonical 順序重新排列音軌，缺少的音軌補預設值
    3. 每個 step 補預設值並夾住 velocity

    參數：
        pattern: Pattern 或原始 dict（例如 API 傳入的 JSON）

    返回：
        正規化後的 Pattern

    異常：
        ValidationError: 版本未知、長度錯誤、bpm 超出範圍、
                         未知或重複的音軌、step 數超過長度
    """
    if isinstance(pattern, Pattern):
        pattern = pattern.model_dump()
    if not isinstance(pattern, Mapping):
        raise ValidationError("Pattern must be an object")

    version = pattern.get("version", PATTERN_VERSION)
    if not _is_number(version) or version != PATTERN_VERSION:
        raise ValidationError(f"Unsupported pattern version: {version!r}")

    length = pattern.get("length", STEPS_PER_PATTERN)
    if not _is_number(length) or length != STEPS_PER_PATTERN:
        raise ValidationError(f"Pattern length must be {STEPS_PER_PATTERN}, got {length!r}")

    bpm = pattern.get("bpm")
    if not isinstance(bpm, int) or isinstance(bpm, bool) or not MIN_BPM <= bpm <= MAX_BPM:
        raise ValidationError(f"Pattern bpm must be an integer in [{MIN_BPM}, {MAX_BPM}], got {bpm!r}")

    tracks = pattern.get("tracks")
    if not isinstance(tracks, (list, tuple)):
        raise ValidationError("Pattern tracks must be a list")

    steps_by_track = {}
    for track in tracks:
        if isinstance(track, TrackPattern):
            track = track.model_dump()
        if not isinstance(track, Mapping):
            raise ValidationError("Pattern track must be an object")

        raw_id = track.get("id")
        try:
            track_id = TrackId(raw_id)
        except ValueError:
            raise ValidationError(f"Unknown track id: {raw_id!r}")
        if track_id in steps_by_track:
            raise ValidationError(f"Duplicate track id: {track_id.value}")

        steps = track.get("steps") or []
        if not isinstance(steps, (list, tuple)):
            raise ValidationError(f"Steps for track {track_id.value} must be a list")
        if len(steps) > STEPS_PER_PATTERN:
            raise ValidationError(
                f"Track {track_id.value} has {len(steps)} steps, max is {STEPS_PER_PATTERN}"
            )
        steps_by_track[track_id] = steps

    normalized_tracks = []
    for track_id in TRACK_ORDER:
        steps = steps_by_track.get(track_id, [])
        normalized_tracks.append(
            TrackPattern(
                id=track_id,
                steps=[
                    _normalize_step(steps[index] if index < len(steps) else None)
                    for index in range(STEPS_PER_PATTERN)
                ],
            )
        )

    try:
        return Pattern(
            version=PATTERN_VERSION,
            length=STEPS_PER_PATTERN,
            bpm=bpm,
            tracks=normalized_tracks,
        )
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid pattern: {e}")


def serialize_pattern_canonical(pattern: PatternInput) -> str:
    """
    將 pattern 序列化成 canonical 字串

    每個 step 編碼為 <active>.<velocity>，velocity 固定補零到 3 位，
    所以不同的正規化 pattern 一定產生不同字串。
    """
    normalized = normalize_pattern(pattern)
    encoded_tracks = []
    for track in normalized.tracks:
        encoded_steps = ",".join(
            f"{1 if step.active else 0}.{step.velocity:03d}" for step in track.steps
        )
        encoded_tracks.append(f"{track.id.value}[{encoded_steps}]")

    return (
        f"pattern:v{normalized.version};len:{normalized.length};"
        f"bpm:{normalized.bpm};tracks:{'|'.join(encoded_tracks)}"
    )


def build_commit_input(
    pattern: PatternInput,
    round_id: str,
    nonce: str,
    commit_input_version: str = COMMIT_INPUT_VERSION,
) -> str:
    return "|".join([
        f"commit_input:{commit_input_version}",
        f"round:{round_id}",
        f"nonce:{nonce}",
        serialize_pattern_canonical(pattern),
    ])


def hash_commit_input(commit_input: str) -> str:
    """SHA-256（UTF-8），小寫 hex"""
    return hashlib.sha256(commit_input.encode("utf-8")).hexdigest()


def hash_pattern_commit_input(
    pattern: PatternInput,
    round_id: str,
    nonce: str,
    commit_input_version: str = COMMIT_INPUT_VERSION,
) -> str:
    return hash_commit_input(build_commit_input(pattern, round_id, nonce, commit_input_version))


def verify_commit_reveal(
    commit_hash: Optional[str],
    pattern: PatternInput,
    round_id: str,
    nonce: str,
    commit_input_version: str = COMMIT_INPUT_VERSION,
) -> bool:
    """
    驗證 reveal 是否符合原本的 commitment

    不符合不是錯誤，只回傳 False（回合仍會結算，但 artist 份額會被沒收）

    異常：
        ValidationError: pattern 格式錯誤
    """
    expected = hash_pattern_commit_input(pattern, round_id, nonce, commit_input_version)
    return expected == commit_hash
