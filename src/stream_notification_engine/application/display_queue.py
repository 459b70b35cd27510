from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog

from stream_notification_engine.application.messages import build_tts_stages, display_window_ms
from stream_notification_engine.application.vfx import COMMAND_RECEIVED_TOPIC
from stream_notification_engine.config import ConfigService, HandcamSettings, PLATFORM_SECTIONS
from stream_notification_engine.domain.display import (
    DisplayContent,
    DisplayItem,
    TTSStage,
    is_chat_kind,
    priority_for,
)
from stream_notification_engine.domain.events import EventType
from stream_notification_engine.ports.broadcaster import BroadcasterPort
from stream_notification_engine.ports.bus import EventBusPort
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.ports.goals import GoalsPort
from stream_notification_engine.util.ids import new_correlation_id

logger = structlog.get_logger(__name__)

TTS_CLEAR_PAUSE_SEC = 0.05
DETAIL_KEYS = ("amount", "currency", "gift_type", "gift_count", "repeat_count", "tier", "months")


async def run_handcam_glow(
    broadcaster: BroadcasterPort, settings: HandcamSettings, clock: ClockPort
) -> None:
    """Ramp the handcam glow filter up, hold it, then ramp it back down."""
    steps = max(1, settings.total_steps)
    up_step = settings.ramp_up_sec / steps
    down_step = settings.ramp_down_sec / steps
    for index in range(1, steps + 1):
        await broadcaster.set_filter_settings(
            settings.source_name, settings.glow_filter_name, {"Size": settings.max_size * index / steps}
        )
        await clock.sleep(up_step)
    await clock.sleep(settings.hold_sec)
    for index in range(steps - 1, -1, -1):
        await broadcaster.set_filter_settings(
            settings.source_name, settings.glow_filter_name, {"Size": settings.max_size * index / steps}
        )
        await clock.sleep(down_step)


class DisplayQueue:
    def __init__(
        self,
        broadcaster: BroadcasterPort,
        config: ConfigService,
        clock: ClockPort,
        bus: EventBusPort | None = None,
        goals: GoalsPort | None = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._config = config
        self._clock = clock
        self._bus = bus
        self._goals = goals
        self._queue: list[DisplayItem] = []
        self._current: DisplayItem | None = None
        self._last_chat: DisplayItem | None = None
        self._processing = False
        self._worker: asyncio.Task[None] | None = None
        self._glow_tasks: set[asyncio.Task[None]] = set()

    @property
    def last_chat_item(self) -> DisplayItem | None:
        return self._last_chat

    @property
    def is_processing(self) -> bool:
        return self._processing

    def add_item(self, item: DisplayItem) -> DisplayItem:
        max_size = self._config.settings.display_queue.max_queue_size
        if max_size and len(self._queue) >= max_size:
            raise ValueError(f"Queue at capacity ({max_size})")

        item = item.model_copy(
            update={
                "priority": item.priority if item.priority is not None else priority_for(item.type),
                "enqueued_at": self._clock.monotonic_ms(),
            }
        )
        if item.is_chat:
            self._last_chat = item
            stale = sum(1 for queued in self._queue if queued.is_chat)
            if stale:
                logger.debug("display_stale_chat_dropped", count=stale)
                self._queue = [queued for queued in self._queue if not queued.is_chat]

        index = len(self._queue)
        for position, queued in enumerate(self._queue):
            if queued.priority < item.priority:
                index = position
                break
        self._queue.insert(index, item)
        logger.debug(
            "display_item_queued",
            type=item.type,
            priority=int(item.priority),
            position=index,
            length=len(self._queue),
        )
        if self._config.settings.display_queue.auto_process:
            self._ensure_worker()
        return item

    def _ensure_worker(self) -> None:
        if self._processing or (self._worker is not None and not self._worker.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._worker = loop.create_task(self.process_queue())

    async def process_queue(self) -> None:
        if self._processing:
            return
        self._processing = True
        timing = self._config.get_timing_config()
        try:
            while self._queue:
                if not await self._broadcaster_ready():
                    logger.debug("display_broadcaster_not_ready", pending=len(self._queue))
                    await self._clock.sleep(timing.not_ready_retry_ms / 1000)
                    continue
                item = self._queue.pop(0)
                self._current = item
                try:
                    await self.display_item(item)
                    await self._clock.sleep(self.get_duration(item) / 1000)
                    if not item.is_chat or self._queue or self._last_chat is None:
                        await self._hide(item)
                    await self._clock.sleep(timing.transition_delay_ms / 1000)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("display_item_failed", type=item.type, error=str(exc))
                    await self._hide_safely(item)
            self._current = None
            if self._last_chat is not None:
                await self._show_lingering_chat()
        finally:
            self._processing = False

    async def display_item(self, item: DisplayItem) -> None:
        if item.is_chat:
            await self._display_chat(item)
        else:
            await self._display_notification(item)

    def get_duration(self, item: DisplayItem) -> int:
        tts = self._config.get_tts_config()
        try:
            stages = build_tts_stages(item.type, item.data, tts)
        except (TypeError, ValueError):
            return 0
        return display_window_ms(stages, tts)

    def get_queue_length(self) -> int:
        return len(self._queue)

    def get_current_display_content(self) -> DisplayContent | None:
        current = self._current
        if current is None:
            if not self._queue and self._last_chat is not None:
                return self._chat_content(self._last_chat, lingering=True)
            return None
        if current.is_chat:
            return self._chat_content(current, lingering=False)
        content = current.data.get("display_message") or f"{current.username} {current.type}"
        return DisplayContent(
            type=current.type,
            content=content,
            username=current.username,
            platform=current.platform,
            notification_details={
                key: current.data[key] for key in DETAIL_KEYS if current.data.get(key) is not None
            },
        )

    def is_item_displayed_to_user(self, item_type: str) -> bool:
        current = self._current
        if is_chat_kind(item_type):
            if current is not None and current.is_chat:
                return True
            return current is None and not self._queue and self._last_chat is not None
        if current is None or current.is_chat:
            return False
        return item_type in ("notification", current.type)

    def clear_queue(self) -> None:
        self._queue.clear()
        self._last_chat = None
        self._current = None
        logger.debug("display_queue_cleared")

    async def stop(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        for task in list(self._glow_tasks):
            task.cancel()
        if self._glow_tasks:
            await asyncio.gather(*self._glow_tasks, return_exceptions=True)
        if self._current is not None:
            await self._hide_safely(self._current)
        self.clear_queue()
        self._processing = False
        logger.info("display_queue_stopped")

    @staticmethod
    def _chat_content(item: DisplayItem, lingering: bool) -> DisplayContent:
        return DisplayContent(
            type="chat",
            content=f"{item.username}: {item.data.get('message', '')}",
            username=item.username,
            platform=item.platform,
            is_lingering=lingering,
        )

    async def _broadcaster_ready(self) -> bool:
        try:
            return await self._broadcaster.is_ready()
        except Exception as exc:  # noqa: BLE001
            logger.warning("display_broadcaster_check_failed", error=str(exc))
            return False

    async def _display_chat(self, item: DisplayItem) -> None:
        if not self._config.are_notifications_enabled("messages_enabled", item.platform):
            logger.debug("display_chat_disabled", platform=item.platform)
            return
        obs = self._config.settings.obs
        await self._broadcaster.set_visibility(obs.notification_scene, obs.notification_msg_group, False)
        await self._broadcaster.set_visibility(obs.chat_msg_scene, obs.chat_msg_group, False)
        await self._clock.sleep(self._config.get_timing_config().transition_delay_ms / 1000)
        await self._broadcaster.set_text(
            obs.chat_msg_txt, f"{item.username}: {item.data.get('message', '')}"
        )
        await self._show_platform_logo(obs.chat_msg_scene, item.platform)
        await self._broadcaster.set_visibility(obs.chat_msg_scene, obs.chat_msg_group, True)
        logger.info("display_item_shown", type=item.type, username=item.username)

    async def _display_notification(self, item: DisplayItem) -> None:
        platform_settings = self._config.platform_config(item.platform)
        if platform_settings is not None and not platform_settings.notifications_enabled:
            logger.debug("display_notifications_disabled", platform=item.platform, type=item.type)
            return

        if item.type == EventType.GIFT:
            await self._track_gift_goal(item)

        obs = self._config.settings.obs
        timing = self._config.get_timing_config()
        await self._broadcaster.set_visibility(obs.chat_msg_scene, obs.chat_msg_group, False)
        await self._clock.sleep(timing.notification_clear_delay_ms / 1000)

        display_message = item.data.get("display_message")
        if not display_message:
            logger.warning("display_item_failed", type=item.type, error="missing display message")
            return
        await self._broadcaster.set_text(obs.notification_txt, display_message)
        await self._show_platform_logo(obs.notification_scene, item.platform)
        await self._broadcaster.set_visibility(obs.notification_scene, obs.notification_msg_group, True)
        logger.info("display_item_shown", type=item.type, username=item.username)

        try:
            await self._run_effects(item)
        except Exception as exc:  # noqa: BLE001
            logger.warning("display_effects_failed", type=item.type, error=str(exc))

    async def _track_gift_goal(self, item: DisplayItem) -> None:
        if self._goals is None or item.data.get("goal_processed"):
            return
        amount = item.data.get("amount")
        if not isinstance(amount, (int, float)) or amount <= 0:
            return
        try:
            await self._goals.process_donation_goal(item.platform, float(amount))
        except Exception as exc:  # noqa: BLE001
            logger.warning("goal_tracking_failed", platform=item.platform, error=str(exc))
            return
        item.data["goal_processed"] = True

    async def _run_effects(self, item: DisplayItem) -> None:
        stages = build_tts_stages(item.type, item.data, self._config.get_tts_config())
        if item.type == EventType.GIFT:
            await self._run_gift_effects(item, stages)
        else:
            await self._run_sequential_effects(item, stages)

    async def _run_gift_effects(self, item: DisplayItem, stages: list[TTSStage]) -> None:
        jobs = [self._play_gift_media()]
        handcam = self._config.settings.handcam
        if handcam.glow_enabled:
            self._spawn_glow(handcam)
        if self._tts_enabled():
            jobs.extend(self._speak_stage(stage) for stage in stages)
        if item.vfx_config is not None and self._bus is not None:
            jobs.append(self._emit_vfx_later(item))
        await asyncio.gather(*jobs)

    async def _run_sequential_effects(self, item: DisplayItem, stages: list[TTSStage]) -> None:
        if item.vfx_config is not None and self._bus is not None:
            correlation_id = new_correlation_id()
            completed: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

            def on_completed(payload: Any) -> None:
                if _payload_correlation(payload) == correlation_id and not completed.done():
                    completed.set_result(payload)

            unsubscribe = self._bus.subscribe(EventType.VFX_EFFECT_COMPLETED, on_completed)
            try:
                if self._emit_vfx(item, correlation_id):
                    timeout_ms = self._config.get_timing_config().vfx_completion_timeout_ms
                    outcome = await self._wait_for(completed, timeout_ms)
                    logger.debug("display_vfx_wait_done", outcome=outcome, type=item.type)
            finally:
                unsubscribe()
        if self._tts_enabled():
            for stage in stages:
                await self._speak_stage(stage)

    async def _wait_for(self, future: asyncio.Future[Any], timeout_ms: int) -> str:
        timer = asyncio.ensure_future(self._clock.sleep(timeout_ms / 1000))
        try:
            done, _ = await asyncio.wait({future, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
        return "completed" if future in done else "timeout"

    async def _emit_vfx_later(self, item: DisplayItem) -> None:
        await self._clock.sleep(self._config.get_timing_config().gift_vfx_delay_ms / 1000)
        self._emit_vfx(item, new_correlation_id())

    def _emit_vfx(self, item: DisplayItem, correlation_id: str) -> bool:
        vfx = item.vfx_config
        if vfx is None or self._bus is None:
            return False
        user_id = item.data.get("user_id")
        if not vfx.command or not item.username or not user_id:
            logger.warning("display_vfx_skipped", type=item.type, command_key=vfx.command_key)
            return False
        self._bus.emit(
            COMMAND_RECEIVED_TOPIC,
            {
                "command": vfx.command,
                "command_key": vfx.command_key,
                "filename": vfx.filename,
                "media_source": vfx.media_source,
                "username": item.username,
                "user_id": user_id,
                "platform": item.platform,
                "notification_type": item.type,
                "correlation_id": correlation_id,
                "source": "display-queue",
            },
        )
        return True

    async def _play_gift_media(self) -> None:
        gifts = self._config.settings.gifts
        sources = [name for name in (gifts.gift_video_source, gifts.gift_audio_source) if name]
        if not sources:
            return
        results = await asyncio.gather(
            *(self._broadcaster.restart_media(name) for name in sources), return_exceptions=True
        )
        for name, result in zip(sources, results, strict=True):
            if isinstance(result, Exception):
                logger.warning("gift_media_failed", source=name, error=str(result))

    def _spawn_glow(self, settings: HandcamSettings) -> None:
        task = asyncio.get_running_loop().create_task(
            run_handcam_glow(self._broadcaster, settings, self._clock)
        )
        self._glow_tasks.add(task)
        task.add_done_callback(self._glow_tasks.discard)

    def _tts_enabled(self) -> bool:
        return self._config.settings.general.tts_enabled

    async def _speak_stage(self, stage: TTSStage) -> None:
        if stage.delay_ms > 0:
            await self._clock.sleep(stage.delay_ms / 1000)
        source = self._config.settings.obs.tts_txt
        try:
            await self._broadcaster.set_text(source, "")
            await self._clock.sleep(TTS_CLEAR_PAUSE_SEC)
            await self._broadcaster.set_text(source, stage.text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("display_tts_failed", kind=stage.kind, error=str(exc))

    async def _show_platform_logo(self, scene: str, platform: str) -> None:
        prefix = self._config.settings.obs.platform_logo_prefix
        for name in PLATFORM_SECTIONS:
            await self._broadcaster.set_visibility(scene, f"{prefix}{name}", name == platform)

    async def _show_lingering_chat(self) -> None:
        item = self._last_chat
        if item is None:
            return
        try:
            if not await self._broadcaster.is_ready():
                return
            obs = self._config.settings.obs
            await self._broadcaster.set_visibility(
                obs.notification_scene, obs.notification_msg_group, False
            )
            await self._broadcaster.set_text(
                obs.chat_msg_txt, f"{item.username}: {item.data.get('message', '')}"
            )
            await self._show_platform_logo(obs.chat_msg_scene, item.platform)
            await self._broadcaster.set_visibility(obs.chat_msg_scene, obs.chat_msg_group, True)
            logger.debug("display_lingering_chat", username=item.username)
        except Exception as exc:  # noqa: BLE001
            logger.warning("display_item_failed", type="lingering-chat", error=str(exc))

    async def _hide(self, item: DisplayItem) -> None:
        obs = self._config.settings.obs
        if item.is_chat:
            await self._broadcaster.set_visibility(obs.chat_msg_scene, obs.chat_msg_group, False)
        else:
            await self._broadcaster.set_visibility(
                obs.notification_scene, obs.notification_msg_group, False
            )

    async def _hide_safely(self, item: DisplayItem) -> None:
        try:
            await self._hide(item)
        except Exception as exc:  # noqa: BLE001
            logger.warning("display_hide_failed", type=item.type, error=str(exc))


def _payload_correlation(payload: Any) -> str | None:
    if isinstance(payload, dict):
        value = payload.get("correlation_id")
        return value if isinstance(value, str) else None
    return getattr(payload, "correlation_id", None)
