from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from models.render_errors import CompilationPreconditionError
from utils.asset_fetcher import (
    AUDIO,
    ROLE_INTRO,
    ROLE_MUSIC,
    ROLE_SCENE,
    VIDEO,
    MaterializedInput,
)
from utils.render_config import OutputGeometry

logger = logging.getLogger(__name__)


AUDIO_SAMPLE_RATE = 48000
AUDIO_CHANNEL_LAYOUT = "stereo"
DEFAULT_CLIP_DURATION_SECONDS = 5.0

# Narrative audio keeps full level; the music bed sits underneath it.
NARRATIVE_MIX_WEIGHT = 1.0
MUSIC_MIX_WEIGHT = 0.3
MUSIC_FADE_OUT_SECONDS = 1.0

DEFAULT_OUTPUT_OPTIONS = [
    "-c:v", "libx264",
    "-preset", "medium",
    "-crf", "23",
    "-pix_fmt", "yuv420p",
    "-c:a", "aac",
    "-b:a", "192k",
    "-ar", str(AUDIO_SAMPLE_RATE),
    "-movflags", "+faststart",
    "-shortest",
]

_RAW_PAD_RE = re.compile(r"^(\d+):([va])$")


class FilterGraphError(ValueError):
    pass


def _fmt(value: float) -> str:
    text = f"{float(value):.3f}".rstrip("0").rstrip(".")
    return text or "0"


@dataclass
class InputSpec:
    path: str
    kind: str
    options: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


@dataclass
class FilterStatement:
    inputs: list[str]
    filters: list[str]
    outputs: list[str]

    def render(self) -> str:
        consumed = "".join(f"[{pad}]" for pad in self.inputs)
        produced = "".join(f"[{pad}]" for pad in self.outputs)
        return f"{consumed}{','.join(self.filters)}{produced}"


@dataclass
class FilterGraphProgram:
    inputs: list[InputSpec]
    statements: list[FilterStatement]
    video_pad: str
    audio_pad: str
    output_options: list[str] = field(default_factory=lambda: list(DEFAULT_OUTPUT_OPTIONS))

    def filter_complex(self) -> str:
        return ";".join(statement.render() for statement in self.statements)

    def statements_using(self, filter_name: str) -> list[FilterStatement]:
        prefix = f"{filter_name}="
        return [
            statement
            for statement in self.statements
            if any(f == filter_name or f.startswith(prefix) for f in statement.filters)
        ]

    def validate(self) -> None:
        """Check that pads are produced before use and produced only once."""
        produced: set[str] = set()
        consumed: set[str] = set()

        def _check_consumable(pad: str) -> None:
            raw = _RAW_PAD_RE.match(pad)
            if raw:
                if int(raw.group(1)) >= len(self.inputs):
                    raise FilterGraphError(f"Pad [{pad}] refers to a missing input")
                return
            if pad not in produced:
                raise FilterGraphError(f"Pad [{pad}] consumed before it is produced")
            if pad in consumed:
                raise FilterGraphError(f"Pad [{pad}] consumed more than once")
            consumed.add(pad)

        for statement in self.statements:
            for pad in statement.inputs:
                _check_consumable(pad)
            for pad in statement.outputs:
                if pad in produced or _RAW_PAD_RE.match(pad):
                    raise FilterGraphError(f"Pad [{pad}] produced more than once")
                produced.add(pad)

        for pad in (self.video_pad, self.audio_pad):
            _check_consumable(pad)

    def output_maps(self) -> list[str]:
        return [f"[{self.video_pad}]", f"[{self.audio_pad}]"]

    def to_command(self, ffmpeg_bin: str, output_path: str) -> list[str]:
        cmd = [ffmpeg_bin, "-y"]
        for input_spec in self.inputs:
            cmd.extend(input_spec.to_args())
        cmd.extend(["-filter_complex", self.filter_complex()])
        for output_map in self.output_maps():
            cmd.extend(["-map", output_map])
        cmd.extend(self.output_options)
        cmd.append(str(output_path))
        return cmd


class ClipsToFFmpeg:
    """Compiles materialized clips into one normalized, concatenated graph.

    Inputs must be ordered ``[intro?] + scenes + [music?]``. Input indices
    are taken from that final list, so omitting an optional asset shifts
    every later index automatically.
    """

    def __init__(
        self,
        inputs: list[MaterializedInput],
        target_duration_seconds: float,
        geometry: OutputGeometry | None = None,
        music_weight: float = MUSIC_MIX_WEIGHT,
        default_clip_duration: float = DEFAULT_CLIP_DURATION_SECONDS,
    ):
        self.inputs = inputs
        self.target_duration_seconds = target_duration_seconds
        self.geometry = geometry or OutputGeometry()
        self.music_weight = music_weight
        self.default_clip_duration = default_clip_duration

        self._statements: list[FilterStatement] = []

    def build(self) -> FilterGraphProgram:
        self._statements = []
        self._check_preconditions()

        input_specs = [InputSpec(path=item.local_path, kind=item.kind) for item in self.inputs]

        segments: list[tuple[str, str]] = []
        music_index: int | None = None
        for index, item in enumerate(self.inputs):
            if item.role == ROLE_MUSIC:
                music_index = index
                continue
            video_pad = self._normalize_video(index)
            if item.has_audio:
                audio_pad = self._normalize_audio(index)
            else:
                audio_pad = self._silent_audio(index, self._clip_duration(item))
            segments.append((video_pad, audio_pad))

        video_pad, audio_pad = self._concat_segments(segments)

        if music_index is not None:
            audio_pad = self._mix_music(music_index, audio_pad)

        program = FilterGraphProgram(
            inputs=input_specs,
            statements=list(self._statements),
            video_pad=video_pad,
            audio_pad=audio_pad,
            output_options=self._build_output_options(),
        )
        program.validate()
        return program

    def _check_preconditions(self) -> None:
        roles = [item.role for item in self.inputs]
        scene_count = roles.count(ROLE_SCENE)
        if scene_count == 0:
            raise CompilationPreconditionError("At least one scene clip is required")
        if roles.count(ROLE_INTRO) > 1 or roles.count(ROLE_MUSIC) > 1:
            raise CompilationPreconditionError("At most one intro clip and one music track")

        expected = (
            ([ROLE_INTRO] if ROLE_INTRO in roles else [])
            + [ROLE_SCENE] * scene_count
            + ([ROLE_MUSIC] if ROLE_MUSIC in roles else [])
        )
        if roles != expected:
            raise CompilationPreconditionError(
                f"Inputs must be ordered intro, scenes, music; got {roles}"
            )

        for item in self.inputs:
            expected_kind = AUDIO if item.role == ROLE_MUSIC else VIDEO
            if item.kind != expected_kind:
                raise CompilationPreconditionError(
                    f"{item.role} input must be {expected_kind}, got {item.kind}"
                )

    def _clip_duration(self, item: MaterializedInput) -> float:
        return item.duration_seconds or self.default_clip_duration

    def _add(self, inputs: list[str], filters: list[str], outputs: list[str]) -> None:
        self._statements.append(FilterStatement(inputs=inputs, filters=filters, outputs=outputs))

    def _normalize_video(self, index: int) -> str:
        width = self.geometry.width
        height = self.geometry.height
        label = f"v{index}"
        self._add(
            [f"{index}:v"],
            [
                f"scale={width}:{height}:force_original_aspect_ratio=decrease",
                f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black",
                "setsar=1",
                f"fps={_fmt(self.geometry.framerate)}",
                f"format={self.geometry.pixel_format}",
            ],
            [label],
        )
        return label

    def _audio_format(self) -> str:
        return f"aformat=sample_fmts=fltp:channel_layouts={AUDIO_CHANNEL_LAYOUT}"

    def _normalize_audio(self, index: int) -> str:
        label = f"a{index}"
        self._add(
            [f"{index}:a"],
            [f"aresample={AUDIO_SAMPLE_RATE}", self._audio_format()],
            [label],
        )
        return label

    def _silent_audio(self, index: int, duration: float) -> str:
        label = f"a{index}"
        self._add(
            [],
            [
                f"anullsrc=r={AUDIO_SAMPLE_RATE}:cl={AUDIO_CHANNEL_LAYOUT}",
                f"atrim=duration={_fmt(duration)}",
                self._audio_format(),
            ],
            [label],
        )
        return label

    def _concat_segments(self, segments: list[tuple[str, str]]) -> tuple[str, str]:
        pads = [pad for segment in segments for pad in segment]
        self._add(
            pads,
            [f"concat=n={len(segments)}:v=1:a=1"],
            ["vcat", "acat"],
        )
        return "vcat", "acat"

    def _music_duration(self) -> float:
        duration = self.target_duration_seconds
        for item in self.inputs:
            if item.role == ROLE_INTRO:
                duration += self._clip_duration(item)
        return duration

    def _mix_music(self, music_index: int, narrative_pad: str) -> str:
        duration = self._music_duration()
        fade = min(MUSIC_FADE_OUT_SECONDS, duration)
        self._add(
            [f"{music_index}:a"],
            [
                f"aresample={AUDIO_SAMPLE_RATE}",
                self._audio_format(),
                f"atrim=duration={_fmt(duration)}",
                f"afade=t=out:st={_fmt(duration - fade)}:d={_fmt(fade)}",
            ],
            ["music"],
        )
        weights = f"{_fmt(NARRATIVE_MIX_WEIGHT)} {_fmt(self.music_weight)}"
        self._add(
            [narrative_pad, "music"],
            [
                f"amix=inputs=2:duration=first:dropout_transition=2"
                f":weights='{weights}':normalize=0"
            ],
            ["aout"],
        )
        return "aout"

    def _build_output_options(self) -> list[str]:
        options = list(DEFAULT_OUTPUT_OPTIONS)
        pix_idx = options.index("-pix_fmt") + 1
        options[pix_idx] = self.geometry.pixel_format
        return options


def compile_filter_graph(
    inputs: list[MaterializedInput],
    target_duration_seconds: float,
    geometry: OutputGeometry | None = None,
) -> FilterGraphProgram:
    program = ClipsToFFmpeg(inputs, target_duration_seconds, geometry).build()
    logger.debug(
        "Compiled filter graph: %d inputs, %d statements",
        len(program.inputs),
        len(program.statements),
    )
    return program
