# =============================================================================
# RealtyVoice Agent - Conversation Orchestrator
# =============================================================================
"""
The voice agent state machine.

    IDLE --start_listening--> LISTENING --stop_listening--> THINKING
    IDLE --send_text_query--> THINKING
    THINKING --reply ready--> SPEAKING --playback done--> IDLE
    any state --cancel--> IDLE

Every turn carries the epoch that was current when it began. cancel() bumps
the epoch and tears down live sessions synchronously, so a late transcript,
reply or playback result from the old turn is recognised after its await and
dropped without touching state or history.
"""

import asyncio
import functools
import logging
from typing import Callable, List, Optional

from config import AgentSettings
from models import CartItem, CartItemType, ConversationState, History, StructuredReply, Turn, TurnRole
from core.audio_graph import AudioGraph
from core.capture import CaptureController, CaptureSession, InputDevice
from core.cart import CartStore, LeadClient, SideEffectHandler
from core.errors import CaptureError, ReasoningFailed, SynthesisFailed, TranscriptionFailed
from core.frames import FrameScheduler
from core.playback import PlaybackScheduler, PlaybackSession
from core.reasoning import ReasoningClient, build_index_notes
from core.synthesis import Pyttsx3SpeechEngine, SpeechEngine, SynthesisClient
from core.transcription import Transcriber, TranscriptionClient
from core.visualization import VisualFrame, Visualizer

logger = logging.getLogger(__name__)

APOLOGY = "Sorry, I had trouble processing that. Please try again."
NO_SPEECH = "(couldn't hear you)"
TRANSCRIPTION_FAILED = "(transcription failed)"


class VoiceAgent:
    """
    Orchestrates capture, transcription, reasoning, synthesis and playback.

    Features:
    - Single active state with resources tied to it (a capture session only
      while LISTENING, a playback session only while SPEAKING)
    - Synchronous cancel from any state
    - Bounded history window sent with every reasoning call
    - Cart and lead side effects applied per successful reply
    """

    def __init__(
        self,
        capture: CaptureController,
        transcriber: Transcriber,
        reasoning: ReasoningClient,
        playback: PlaybackScheduler,
        side_effects: SideEffectHandler,
        graph: AudioGraph,
        frames: FrameScheduler,
        synthesis: Optional[SynthesisClient] = None,
        history_window: int = 10,
        max_capture_seconds: float = 30.0,
    ):
        self.capture = capture
        self.transcriber = transcriber
        self.reasoning = reasoning
        self.playback = playback
        self.side_effects = side_effects
        self.graph = graph
        self.frames = frames
        self.synthesis = synthesis
        self.history_window = history_window
        self.max_capture_seconds = max_capture_seconds

        self.history = History()
        self.transcript = ""
        self.response = ""
        self.last_reply: Optional[StructuredReply] = None
        self.spoken_words: List[str] = []
        self.word_index = 0

        # Observers
        self.on_state_change: Optional[Callable[[ConversationState], None]] = None
        self.on_word_index: Optional[Callable[[int], None]] = None
        self.on_transcript: Optional[Callable[[str], None]] = None
        self.on_response: Optional[Callable[[str], None]] = None

        self._state = ConversationState.IDLE
        self._epoch = 0
        self._capture_session: Optional[CaptureSession] = None
        self._capture_timer: Optional[asyncio.TimerHandle] = None
        self._playback_session: Optional[PlaybackSession] = None
        self._pending_turn: Optional[Turn] = None
        self._turn_task: Optional[asyncio.Task] = None
        self.visualizer: Optional[Visualizer] = None

    # -------------------------------------------------------------------------
    # Observable state
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def capture_session(self) -> Optional[CaptureSession]:
        return self._capture_session

    @property
    def playback_session(self) -> Optional[PlaybackSession]:
        return self._playback_session

    @property
    def turn_task(self) -> Optional[asyncio.Task]:
        return self._turn_task

    def _set_state(self, state: ConversationState) -> None:
        if state == self._state:
            return
        logger.debug(f"State {self._state.value} -> {state.value}")
        self._state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _set_transcript(self, text: str) -> None:
        self.transcript = text
        if self.on_transcript:
            self.on_transcript(text)

    def _set_response(self, text: str) -> None:
        self.response = text
        if self.on_response:
            self.on_response(text)

    def _publish_word_index(self, index: int) -> None:
        self.word_index = index
        if self.on_word_index:
            self.on_word_index(index)

    def _stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def start_listening(self) -> bool:
        """
        Open the microphone and begin a capture session.

        Returns:
            True if listening started; False if not idle or the device failed
        """
        if self._state != ConversationState.IDLE:
            logger.debug(f"start_listening ignored in state {self._state.value}")
            return False

        try:
            session = self.capture.start()
        except CaptureError as e:
            logger.warning(f"Microphone error: {e}")
            self._set_response(APOLOGY)
            return False

        self._capture_session = session
        self._set_transcript("")
        self._set_state(ConversationState.LISTENING)

        loop = asyncio.get_running_loop()
        self._capture_timer = loop.call_later(
            self.max_capture_seconds, self._natural_release, self._epoch
        )
        return True

    def _natural_release(self, epoch: int) -> None:
        self._capture_timer = None
        if self._stale(epoch) or self._state != ConversationState.LISTENING:
            return
        logger.info(f"Capture reached {self.max_capture_seconds:g}s, stopping")
        self.stop_listening()

    def stop_listening(self) -> Optional[asyncio.Task]:
        """
        Stop capturing and process what was heard.

        Returns:
            The turn task, or None when nothing was captured
        """
        if self._state != ConversationState.LISTENING or self._capture_session is None:
            return None

        self._cancel_capture_timer()
        session, self._capture_session = self._capture_session, None
        try:
            payload = session.flush()
        except CaptureError as e:
            logger.error(f"Capture failed: {e}")
            self._set_response(APOLOGY)
            self._set_state(ConversationState.IDLE)
            return None

        self._set_state(ConversationState.THINKING)
        if not payload:
            self._set_transcript(NO_SPEECH)
            self._set_state(ConversationState.IDLE)
            return None

        return self._spawn(self._voice_turn(payload, session.codec.mime_type, self._epoch))

    def _cancel_capture_timer(self) -> None:
        if self._capture_timer is not None:
            self._capture_timer.cancel()
            self._capture_timer = None

    # -------------------------------------------------------------------------
    # Turn pipeline
    # -------------------------------------------------------------------------

    def send_text_query(self, text: str) -> Optional[asyncio.Task]:
        """Ask a typed question. Only accepted while idle."""
        text = text.strip()
        if not text:
            return None
        if self._state != ConversationState.IDLE:
            logger.debug(f"send_text_query ignored in state {self._state.value}")
            return None

        self._set_transcript(text)
        self._set_state(ConversationState.THINKING)
        return self._spawn(self._reason_and_speak(text, self._epoch))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        task.add_done_callback(functools.partial(self._on_turn_done, self._epoch))
        self._turn_task = task
        return task

    def _on_turn_done(self, epoch: int, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        logger.error("Turn failed unexpectedly", exc_info=error)
        if not self._stale(epoch):
            self._fail()

    def _fail(self) -> None:
        """End the current turn with a single apology."""
        self._discard_pending_turn()
        self._release_playback()
        self._set_response(APOLOGY)
        self._set_state(ConversationState.IDLE)

    def _discard_pending_turn(self) -> None:
        if self._pending_turn is not None:
            self.history.discard(self._pending_turn)
            self._pending_turn = None

    async def _voice_turn(self, payload: bytes, mime_type: str, epoch: int) -> None:
        try:
            transcript = await self.transcriber.transcribe(payload, mime_type)
        except TranscriptionFailed as e:
            if self._stale(epoch):
                return
            logger.error(f"Transcription error: {e}")
            self._set_transcript(TRANSCRIPTION_FAILED)
            self._fail()
            return

        if self._stale(epoch):
            return
        if not transcript:
            self._set_transcript(NO_SPEECH)
            self._set_state(ConversationState.IDLE)
            return

        self._set_transcript(transcript)
        await self._reason_and_speak(transcript, epoch)

    async def _reason_and_speak(self, query: str, epoch: int) -> None:
        self._set_response("")
        self.word_index = 0
        self._pending_turn = self.history.add_turn(TurnRole.USER, query)
        window = self.history.window(self.history_window)

        try:
            reply = await self.reasoning.ask(query, window)
            if not reply.message.strip():
                raise ReasoningFailed("Reasoning service returned an empty message")
        except ReasoningFailed as e:
            if self._stale(epoch):
                return
            logger.error(f"AI query error: {e}")
            self._fail()
            return

        if self._stale(epoch):
            return

        self._pending_turn = None
        self.history.add_turn(TurnRole.AGENT, reply.message)
        for note in build_index_notes(reply):
            self.history.add_turn(TurnRole.SYSTEM, note)
        self.last_reply = reply
        self._set_response(reply.message)
        self.side_effects.apply(reply, query)

        audio = None
        if self.synthesis is not None:
            try:
                audio = await self.synthesis.synthesize(reply.message)
            except SynthesisFailed as e:
                logger.warning(f"Synthesis failed, using fallback voice: {e}")
            if self._stale(epoch):
                return

        await self._speak(reply.message, audio, epoch)

    async def _speak(self, text: str, audio: Optional[bytes], epoch: int) -> None:
        self.spoken_words = text.split()
        self.word_index = 0
        self._set_state(ConversationState.SPEAKING)
        session = self.playback.start(text, audio, self._publish_word_index)
        self._playback_session = session

        completed = await session.done
        if self._stale(epoch):
            return
        self._playback_session = None
        logger.debug(f"Playback finished (completed={completed})")
        self._set_state(ConversationState.IDLE)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def _release_playback(self) -> None:
        session, self._playback_session = self._playback_session, None
        if session is not None:
            session.close()

    def cancel(self) -> None:
        """Abort whatever is happening and return to idle. Synchronous."""
        self._epoch += 1
        self._cancel_capture_timer()

        session, self._capture_session = self._capture_session, None
        if session is not None:
            session.release()
        self._release_playback()
        self._discard_pending_turn()

        self.word_index = 0
        if self._state != ConversationState.IDLE:
            logger.info(f"Cancelled while {self._state.value}")
        self._set_state(ConversationState.IDLE)

    # -------------------------------------------------------------------------
    # Cart
    # -------------------------------------------------------------------------

    @property
    def cart(self) -> List[CartItem]:
        return self.side_effects.cart.items()

    def add_to_cart(self, item: CartItem) -> bool:
        return self.side_effects.cart.add(item)

    def remove_from_cart(self, item_id: str, item_type: Optional[CartItemType] = None) -> int:
        return self.side_effects.cart.remove(item_id, item_type)

    def clear_cart(self) -> None:
        self.side_effects.cart.clear()

    # -------------------------------------------------------------------------
    # Visuals
    # -------------------------------------------------------------------------

    def attach_visualizer(self, sink: Callable[[VisualFrame], None]) -> Visualizer:
        """Start sampling orb and avatar frames into `sink`; stopped by aclose()."""
        if self.visualizer is not None:
            self.visualizer.stop()
        self.visualizer = Visualizer(self, self.graph, self.frames, sink)
        self.visualizer.start()
        return self.visualizer

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        """Cancel, drain background work and release every resource."""
        self.cancel()
        task, self._turn_task = self._turn_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self.side_effects.aclose()
        if self.visualizer is not None:
            self.visualizer.stop()
        self.frames.cancel_all()
        self.graph.dispose()

        for client in (self.transcriber, self.reasoning, self.synthesis):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        logger.info("Voice agent closed")


# =============================================================================
# Factory
# =============================================================================

def build_agent(
    settings: Optional[AgentSettings] = None,
    device: Optional[InputDevice] = None,
    speech_engine: Optional[SpeechEngine] = None,
) -> VoiceAgent:
    """
    Assemble a VoiceAgent from settings.

    Args:
        settings: Agent settings (defaults to the environment)
        device: Input device (defaults to the sounddevice microphone)
        speech_engine: On-device speech (defaults to pyttsx3 when available)
    """
    settings = settings or AgentSettings.from_env()
    base_url = settings.api_base_url
    timeout = settings.http_timeout_seconds

    graph = AudioGraph(fft_size=settings.playback.fft_size, smoothing=settings.playback.smoothing)
    frames = FrameScheduler(frame_rate=settings.playback.frame_rate)

    capture = CaptureController(
        graph,
        device=device,
        sample_rate=settings.capture.sample_rate,
        channels=settings.capture.channels,
        chunk_ms=settings.capture.chunk_ms,
    )

    if settings.transcription_backend == "local":
        from core.whisper_engine import WhisperEngine
        transcriber: Transcriber = WhisperEngine(model_name=settings.whisper_model)
    else:
        transcriber = TranscriptionClient(base_url=base_url, timeout_seconds=timeout)

    playback = PlaybackScheduler(
        graph,
        frames,
        speech_engine=speech_engine or Pyttsx3SpeechEngine.create(),
        reveal_ms_per_char=settings.playback.reveal_ms_per_char,
        min_reveal_ms=settings.playback.min_reveal_ms,
    )

    return VoiceAgent(
        capture=capture,
        transcriber=transcriber,
        reasoning=ReasoningClient(base_url=base_url, timeout_seconds=timeout),
        playback=playback,
        side_effects=SideEffectHandler(CartStore(), LeadClient(base_url=base_url)),
        graph=graph,
        frames=frames,
        synthesis=SynthesisClient(base_url=base_url, timeout_seconds=timeout),
        history_window=settings.history_window,
        max_capture_seconds=settings.capture.max_seconds,
    )


# =============================================================================
# Terminal front end
# =============================================================================

HELP_TEXT = (
    "[bold]Enter[/bold] start/stop talking (interrupts while speaking)\n"
    "[bold]text[/bold]  ask by typing\n"
    "[bold]/cart[/bold] show cart   [bold]/clear[/bold] empty cart\n"
    "[bold]/cancel[/bold] stop the current turn   [bold]/quit[/bold] exit"
)


def _cart_table(items: List[CartItem]):
    from rich.table import Table

    table = Table(title=f"Cart ({len(items)})")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("Price", justify="right")
    table.add_column("City")
    table.add_column("Contact")
    for item in items:
        table.add_row(
            item.type.value,
            item.title,
            f"{item.currency} {item.price:,.0f}",
            item.city or "-",
            item.contact_phone or "-",
        )
    return table


def render_visual_frame(frame: Optional[VisualFrame]):
    """Orb bars, mouth shape and the spoken caption as a rich panel."""
    from rich.panel import Panel
    from rich.text import Text

    if frame is None:
        return Text("")

    color = frame.orb.hex_color
    body = Text(frame.orb.bars(48), style=color)
    eyes = "- -" if frame.avatar.blink > 0.5 else "o o"
    body.append(f"\n{eyes}  mouth {frame.avatar.viseme} {frame.avatar.mouth_open:.2f}", style="dim")
    if frame.caption:
        body.append("\n")
        body.append(frame.caption)
    if frame.window:
        body.append("\n» ")
        body.append(" ".join(frame.window), style="bold")
    return Panel(body, title=frame.orb.state.value, border_style=color)


async def run_voice_cli(agent: Optional[VoiceAgent] = None, console=None) -> None:
    """Interactive push-to-talk session in the terminal."""
    from rich.console import Console
    from rich.live import Live
    from rich.panel import Panel

    console = console or Console()
    agent = agent or build_agent()

    latest: List[VisualFrame] = []
    live = Live(
        get_renderable=lambda: render_visual_frame(latest[-1] if latest else None),
        console=console,
        refresh_per_second=15,
        transient=True,
    )

    def on_visual_frame(frame: VisualFrame) -> None:
        latest[:] = [frame]

    def on_state_change(state: ConversationState) -> None:
        # The live panel only runs while a turn is in progress
        if state == ConversationState.IDLE:
            live.stop()
        else:
            live.start()
        console.print(f"[dim]· {state.value}[/dim]")

    agent.on_state_change = on_state_change
    agent.attach_visualizer(on_visual_frame)
    agent.on_transcript = lambda text: text and console.print(f"[bold cyan]You:[/bold cyan] {text}")
    agent.on_response = lambda text: text and console.print(Panel(text, title="Agent", border_style="blue"))

    console.print(Panel.fit(HELP_TEXT, title="RealtyVoice Agent", border_style="blue"))
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, console.input, "[bold]> [/bold]")
            command = line.strip()

            if command in ("/quit", "/exit"):
                break
            if command == "/cancel":
                agent.cancel()
            elif command == "/cart":
                console.print(_cart_table(agent.cart))
            elif command == "/clear":
                agent.clear_cart()
                console.print("[dim]Cart cleared[/dim]")
            elif not command:
                if agent.state == ConversationState.LISTENING:
                    agent.stop_listening()
                elif agent.state == ConversationState.IDLE:
                    if agent.start_listening():
                        console.print("[red]● Listening[/red] (press Enter to stop)")
                else:
                    agent.cancel()
            else:
                if agent.state != ConversationState.IDLE:
                    agent.cancel()
                agent.send_text_query(command)
    finally:
        live.stop()
        await agent.aclose()
