# =============================================================================
# RealtyVoice Agent - Visualization
# =============================================================================
"""
Per-frame visual state for the orb and the avatar.

Renderers are pure samplers: they read the current conversation state and
the analyser the audio graph exposes for it, and produce frames for a sink
(a terminal panel, a websocket, a test list). They never drive the
conversation.
"""

import math
import random
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from models import ConversationState
from .audio_graph import Analyser, AudioGraph
from .frames import FrameScheduler

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]

STATE_COLORS: Dict[ConversationState, Tuple[RGB, RGB, RGB]] = {
    ConversationState.IDLE: ((99, 102, 241), (139, 92, 246), (79, 70, 229)),
    ConversationState.LISTENING: ((239, 68, 68), (251, 146, 60), (220, 38, 38)),
    ConversationState.THINKING: ((245, 158, 11), (168, 85, 247), (217, 119, 6)),
    ConversationState.SPEAKING: ((59, 130, 246), (168, 85, 247), (99, 102, 241)),
}

GLOW_ALPHA = {
    ConversationState.IDLE: 0.04,
    ConversationState.THINKING: 0.07,
}

BAR_GLYPHS = " ▁▂▃▄▅▆▇█"


# =============================================================================
# Orb
# =============================================================================

@dataclass
class OrbFrame:
    state: ConversationState
    levels: np.ndarray
    colors: Tuple[RGB, RGB, RGB]
    phase: float
    intensity: float
    glow: float

    def bars(self, width: int = 32) -> str:
        """Levels resampled to `width` columns of block glyphs."""
        if width <= 0 or self.levels.size == 0:
            return ""
        picks = np.linspace(0, self.levels.size - 1, width).astype(int)
        steps = len(BAR_GLYPHS) - 1
        return "".join(BAR_GLYPHS[int(round(min(max(v, 0.0), 1.0) * steps))] for v in self.levels[picks])

    @property
    def hex_color(self) -> str:
        r, g, b = self.colors[0]
        return f"#{r:02x}{g:02x}{b:02x}"


class OrbRenderer:
    """
    Frequency-reactive waveform orb.

    Levels follow the active analyser with exponential smoothing: slow (0.93)
    while idle or thinking, fast (0.7) while listening or speaking. With no
    analyser the orb breathes on a sine of its phase.
    """

    def __init__(self, bins: int = 64):
        self.bins = bins
        self.phase = 0.0
        self._smooth = np.zeros(bins, dtype=np.float64)

    @staticmethod
    def smoothing_for(state: ConversationState) -> float:
        if state in (ConversationState.IDLE, ConversationState.THINKING):
            return 0.93
        return 0.7

    def breathing(self) -> np.ndarray:
        positions = np.linspace(0.0, math.pi, self.bins)
        return 0.08 * (1.0 + np.sin(self.phase * 2.0 + positions)) * np.sin(positions)

    def _sample(self, analyser: Analyser) -> np.ndarray:
        data = analyser.byte_frequency_data().astype(np.float64) / 255.0
        if data.size == self.bins:
            return data
        return np.interp(np.linspace(0, data.size - 1, self.bins), np.arange(data.size), data)

    def render(self, state: ConversationState, analyser: Optional[Analyser]) -> OrbFrame:
        target = self._sample(analyser) if analyser is not None else self.breathing()
        sm = self.smoothing_for(state)
        self._smooth = self._smooth * sm + target * (1.0 - sm)

        self.phase += 0.04 if state == ConversationState.THINKING else 0.02

        active = state in (ConversationState.LISTENING, ConversationState.SPEAKING)
        base = 0.13 if active else 0.035
        return OrbFrame(
            state=state,
            levels=self._smooth.copy(),
            colors=STATE_COLORS[state],
            phase=self.phase,
            intensity=base + float(self._smooth.mean()) * 0.3,
            glow=GLOW_ALPHA.get(state, 0.12),
        )


# =============================================================================
# Avatar
# =============================================================================

VISEME_NAMES = [
    "viseme_sil",  # silence
    "viseme_PP",   # p, b, m
    "viseme_FF",   # f, v
    "viseme_TH",   # th
    "viseme_DD",   # t, d
    "viseme_kk",   # k, g
    "viseme_CH",   # ch, j, sh
    "viseme_SS",   # s, z
    "viseme_nn",   # n, l
    "viseme_RR",   # r
    "viseme_aa",
    "viseme_E",
    "viseme_I",
    "viseme_O",
    "viseme_U",
]

CHAR_VISEMES = {
    "a": 10, "e": 11, "i": 12, "o": 13, "u": 14,
    "p": 1, "b": 1, "m": 1,
    "f": 2, "v": 2,
    "t": 4, "d": 4,
    "n": 8, "l": 8,
    "k": 5, "g": 5,
    "s": 7, "z": 7,
    "r": 9,
}


def text_to_visemes(text: str) -> List[int]:
    """Approximate one viseme per character; anything unmapped is silence."""
    return [CHAR_VISEMES.get(ch, 0) for ch in text.lower()]


def _lerp(current: np.ndarray, target: np.ndarray, t: float) -> np.ndarray:
    return current + (target - current) * min(t, 1.0)


@dataclass
class AvatarFrame:
    weights: Dict[str, float]
    blink: float
    viseme: str

    @property
    def mouth_open(self) -> float:
        return max(self.weights.values()) if self.weights else 0.0


class AvatarRenderer:
    """
    Character-driven viseme animation with independent blinking.

    Not phoneme-accurate: the text is walked at a fixed rate and the mouth
    eases toward the viseme of the current character.
    """

    VISEMES_PER_SECOND = 12.0
    TARGET_WEIGHT = 0.7

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self.weights = np.zeros(len(VISEME_NAMES), dtype=np.float64)
        self.blink = 0.0

        self._text: Optional[str] = None
        self._sequence: List[int] = []
        self._viseme_timer = 0.0
        self._viseme_index = 0

        self._blink_timer = self._rng.uniform(2.0, 5.0)
        self._blinking = False
        self._blink_progress = 0.0

    @property
    def current_viseme(self) -> str:
        if not self._sequence:
            return VISEME_NAMES[0]
        return VISEME_NAMES[self._sequence[self._viseme_index]]

    def update(self, delta: float, speaking: bool, text: str = "") -> AvatarFrame:
        if speaking and text and text != self._text:
            self._text = text
            self._sequence = text_to_visemes(text)
            self._viseme_index = 0
            self._viseme_timer = 0.0

        if speaking and self._sequence:
            self._viseme_timer += delta
            idx = int(self._viseme_timer * self.VISEMES_PER_SECOND)
            if idx < len(self._sequence):
                self._viseme_index = idx
            target = np.zeros_like(self.weights)
            target[self._sequence[self._viseme_index]] = self.TARGET_WEIGHT
            self.weights = _lerp(self.weights, target, delta * 15)
            viseme = self.current_viseme
        else:
            self.weights = _lerp(self.weights, np.zeros_like(self.weights), delta * 8)
            viseme = VISEME_NAMES[0]
            if not speaking:
                self._text = None
                self._sequence = []

        self._update_blink(delta)
        return AvatarFrame(
            weights={name: float(w) for name, w in zip(VISEME_NAMES, self.weights)},
            blink=self.blink,
            viseme=viseme,
        )

    def _update_blink(self, delta: float) -> None:
        self._blink_timer -= delta
        if self._blink_timer <= 0 and not self._blinking:
            self._blinking = True
            self._blink_progress = 0.0

        if not self._blinking:
            self.blink = 0.0
            return

        self._blink_progress += delta * 8
        p = self._blink_progress
        self.blink = max(0.0, p * 2 if p < 0.5 else 2 - p * 2)
        if p >= 1:
            self._blinking = False
            self.blink = 0.0
            self._blink_timer = self._rng.uniform(2.0, 6.0)


def speaking_window(words: Sequence[str], index: int) -> List[str]:
    """The word being spoken with one word of context on each side."""
    return list(words[max(index - 1, 0):index + 2])


# =============================================================================
# Frame loop
# =============================================================================

class VisualSource(Protocol):
    """What a visualizer samples from the agent."""

    @property
    def state(self) -> ConversationState: ...

    @property
    def spoken_words(self) -> List[str]: ...

    @property
    def word_index(self) -> int: ...


@dataclass
class VisualFrame:
    orb: OrbFrame
    avatar: AvatarFrame
    caption: str = ""
    window: List[str] = field(default_factory=list)


class Visualizer:
    """Samples the agent once per frame and hands the result to `sink`."""

    def __init__(
        self,
        source: VisualSource,
        graph: AudioGraph,
        frames: FrameScheduler,
        sink: Callable[[VisualFrame], None],
        orb: Optional[OrbRenderer] = None,
        avatar: Optional[AvatarRenderer] = None,
    ):
        self.source = source
        self.graph = graph
        self.frames = frames
        self.sink = sink
        self.orb = orb or OrbRenderer(bins=graph.fft_size // 2)
        self.avatar = avatar or AvatarRenderer()
        self._handle: Optional[int] = None
        self._last_time: Optional[float] = None
        self.frame_count = 0

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is None:
            self._handle = self.frames.request_frame(self._tick)

    def stop(self) -> None:
        if self._handle is not None:
            self.frames.cancel_frame(self._handle)
            self._handle = None
        self._last_time = None

    def _tick(self, now: float) -> None:
        self._handle = None
        delta = self.frames.frame_interval if self._last_time is None else now - self._last_time
        self._last_time = now
        self.sink(self.sample(delta))
        self.frame_count += 1
        self._handle = self.frames.request_frame(self._tick)

    def sample(self, delta: float) -> VisualFrame:
        state = self.source.state
        orb_frame = self.orb.render(state, self.graph.analyser_for(state))

        speaking = state == ConversationState.SPEAKING
        words = self.source.spoken_words if speaking else []
        index = self.source.word_index
        window = speaking_window(words, index) if words else []
        avatar_frame = self.avatar.update(delta, speaking, " ".join(window))
        caption = " ".join(words[:index + 1]) if words else ""
        return VisualFrame(orb=orb_frame, avatar=avatar_frame, caption=caption, window=window)
