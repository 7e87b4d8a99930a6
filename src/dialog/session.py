"""
One dialog session per client connection.

Owns the channel, the engine and the remote providers for a connected client,
tracks the current route and locale, and runs flows in a background task so the
WebSocket loop keeps feeding recognition and playback events while a flow waits.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional
import uuid

import structlog

from src.dialog.channel import ChannelEvent, SpeechChannel, profile_for_route
from src.dialog.client_protocol import (
    ClientEventType,
    HelloEvent,
    RouteEvent,
    TextInputEvent,
    create_channel_state_message,
    create_flow_result_message,
    create_ready_message,
    create_unsupported_message,
    parse_client_message,
)
from src.dialog.config import Config, get_config
from src.dialog.engine import ConversationEngine, Flow, FlowStatus, TerminalResult
from src.dialog.errors import DialogError, UnsupportedError
from src.dialog.flows import FlowDeps, build_flow
from src.dialog.locale import normalize_locale
from src.dialog.providers.remote import RemoteClient
from src.dialog.records import AuthService, RecordStore

logger = structlog.get_logger(__name__)

# Channel events mirrored to the client as channel_state messages.
_STATE_EVENTS = frozenset(
    {
        ChannelEvent.LISTENING_STARTED,
        ChannelEvent.LISTENING_STOPPED,
        ChannelEvent.SPEAKING_STARTED,
        ChannelEvent.SPEAKING_STOPPED,
        ChannelEvent.COOLDOWN_ENDED,
        ChannelEvent.ERROR,
        ChannelEvent.TRANSCRIPT,
    }
)


class DialogSession:
    def __init__(
        self,
        send: Callable[[str], None],
        *,
        auth: AuthService,
        store: RecordStore,
        config: Optional[Config] = None,
        session_id: Optional[str] = None,
    ):
        if config is None:
            config = get_config()
        self.config = config
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._send = send
        self.client = RemoteClient(send)
        self.auth = auth
        self.store = store

        self.route = "/"
        self.locale = normalize_locale(config.default_locale)
        self.channel: Optional[SpeechChannel] = None
        self.engine: Optional[ConversationEngine] = None
        self._flow_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self.flows_started = 0
        self.last_result: Optional[TerminalResult] = None

    @property
    def flow_active(self) -> bool:
        return self._flow_task is not None and not self._flow_task.done()

    async def handle_message(self, raw: Any) -> None:
        """Handle one raw inbound message. Raises ValueError for malformed input."""
        event_type, event = parse_client_message(raw)

        if self.client.dispatch(event_type, event):
            return

        if event_type == ClientEventType.HELLO:
            self.handle_hello(event)
        elif event_type == ClientEventType.ROUTE:
            self.navigate(event)
        elif event_type == ClientEventType.TEXT_INPUT:
            self.handle_text_input(event)
        elif event_type == ClientEventType.START_FLOW:
            self.start_flow(event.flow, **event.params)
        elif event_type == ClientEventType.CANCEL_FLOW:
            self.cancel_flow(event.reason)

    def handle_hello(self, event: HelloEvent) -> None:
        if self.channel is not None:
            logger.warning("Duplicate hello ignored", session_id=self.session_id)
            return

        self.client.apply_hello(event)
        self.route = event.route
        self.locale = normalize_locale(event.locale)

        recognizer = self.client.recognizer if event.recognition else None
        self.channel = SpeechChannel(
            recognizer,
            self.client.synthesizer,
            locale=self.locale,
            config=self.config,
        )
        self.engine = ConversationEngine(
            self.channel,
            default_profile=profile_for_route(self.route, self.config),
            config=self.config,
        )
        self._unsubscribe = self.channel.subscribe(self._on_channel_event)

        logger.info(
            "Session ready",
            session_id=self.session_id,
            locale=self.locale,
            route=self.route,
            recognition=event.recognition,
            otp=event.otp,
            client=event.client,
        )
        self._send(create_ready_message(self.session_id, self.locale, self.channel.recognition_supported))
        if not self.channel.recognition_supported:
            self._send(create_unsupported_message("recognition", "Speech recognition is not available"))

    def navigate(self, event: RouteEvent) -> None:
        """Route change: cancel the active flow and hard-reset the channel."""
        self.route = event.route
        if event.locale:
            self.locale = normalize_locale(event.locale)
        if self.channel is None or self.engine is None:
            return
        self.channel.set_locale(self.locale)
        self.engine.default_profile = profile_for_route(self.route, self.config)
        if not self.engine.cancel("navigation"):
            self.channel.on_context_switch()
        logger.info("Route changed", session_id=self.session_id, route=self.route)

    def handle_text_input(self, event: TextInputEvent) -> None:
        if self.channel is None:
            return
        if not self.channel.submit_text(event.text):
            logger.debug("Text input arrived while not listening", session_id=self.session_id)

    def start_flow(self, name: str, **params: Any) -> bool:
        if self.channel is None or self.engine is None:
            logger.warning("Flow requested before hello", session_id=self.session_id, flow=name)
            return False
        if self.flow_active:
            logger.warning("Flow already running", session_id=self.session_id, flow=name)
            return False

        deps = FlowDeps(
            auth=self.auth,
            store=self.store,
            capture=self.client.capture,
            config=self.config,
        )
        params.setdefault("locale", self.locale)
        try:
            flow = build_flow(name, deps, **params)
        except (DialogError, TypeError) as e:
            logger.warning("Flow could not be built", session_id=self.session_id, flow=name, error=str(e))
            self._send(create_unsupported_message(f"flow:{name}", str(e)))
            return False

        self.flows_started += 1
        self._flow_task = asyncio.create_task(self._run_flow(flow))
        return True

    async def _run_flow(self, flow: Flow) -> None:
        if self.engine is None:
            return
        try:
            result = await self.engine.run(flow)
        except UnsupportedError as e:
            logger.info("Flow not started, recognition unsupported", session_id=self.session_id, flow=flow.name)
            self._send(create_unsupported_message("recognition", str(e)))
            return
        except Exception:
            logger.exception("Flow failed", session_id=self.session_id, flow=flow.name)
            result = TerminalResult(
                status=FlowStatus.ABANDONED,
                flow=flow.name,
                step_id=flow.current,
                values=dict(flow.values),
                outcome="error",
            )
        self.last_result = result
        self._send(create_flow_result_message(result))

    def cancel_flow(self, reason: str = "cancelled") -> bool:
        if self.engine is None:
            return False
        return self.engine.cancel(reason)

    async def wait_for_flow(self) -> Optional[TerminalResult]:
        if self._flow_task is not None:
            await asyncio.wait({self._flow_task})
        return self.last_result

    def _on_channel_event(self, event: ChannelEvent, data: dict[str, Any]) -> None:
        if event in _STATE_EVENTS and self.channel is not None:
            self._send(create_channel_state_message(self.channel.state))

    async def close(self) -> None:
        """Cancel everything; called when the connection goes away."""
        self.cancel_flow("disconnected")
        if self._flow_task is not None and not self._flow_task.done():
            await asyncio.wait({self._flow_task}, timeout=1.0)
            if not self._flow_task.done():
                self._flow_task.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.channel is not None:
            self.channel.close()
        logger.info("Session closed", session_id=self.session_id, flows_started=self.flows_started)
