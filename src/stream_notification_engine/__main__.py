from __future__ import annotations

import argparse
import asyncio
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
from dotenv import load_dotenv

from stream_notification_engine.adapters.custom_ws import CustomWebSocketPlatform
from stream_notification_engine.adapters.event_bus import InProcessEventBus
from stream_notification_engine.adapters.http_detector import HttpStreamDetector
from stream_notification_engine.adapters.log_broadcaster import LogBroadcaster, LogEffects
from stream_notification_engine.adapters.obs_ws import BroadcasterEffects, ObsWebSocketBroadcaster
from stream_notification_engine.application.chat_router import ChatNotificationRouter
from stream_notification_engine.application.cooldowns import CommandCooldownService
from stream_notification_engine.application.display_queue import DisplayQueue
from stream_notification_engine.application.goals import GoalTracker
from stream_notification_engine.application.graceful_exit import GracefulExitService
from stream_notification_engine.application.lifecycle import PlatformLifecycleService
from stream_notification_engine.application.notifications import NotificationManager
from stream_notification_engine.application.router import PlatformEventRouter
from stream_notification_engine.application.runtime import StreamRuntime, default_runtime_handlers
from stream_notification_engine.application.spam_detection import DonationSpamDetector
from stream_notification_engine.application.user_tracking import UserTrackingService
from stream_notification_engine.application.vfx import VFXCommandService
from stream_notification_engine.config import ConfigService, Settings, load_settings
from stream_notification_engine.ports.adapter import AdapterFactory
from stream_notification_engine.ports.broadcaster import BroadcasterPort, EffectsPort
from stream_notification_engine.ports.clock import ClockPort
from stream_notification_engine.ports.detector import StreamDetectorPort
from stream_notification_engine.util.clock import SystemClock
from stream_notification_engine.util.httpx_setup import silence_httpx_logs
from stream_notification_engine.util.logging_setup import configure_logging
from stream_notification_engine.util.token_store import TokenStore

logger = structlog.get_logger(__name__)

WEBSOCKET_PLATFORMS = ("custom", "streamelements")


def default_adapters(settings: Settings, clock: ClockPort) -> dict[str, AdapterFactory]:
    """Websocket adapters sharing the token store and gift aggregation settings."""
    token_store = TokenStore(settings.token_store.path, platform=settings.token_store.platform)

    def build(config: Mapping[str, Any]) -> CustomWebSocketPlatform:
        owns_tokens = config.get("platform") == token_store.platform
        return CustomWebSocketPlatform(
            config,
            token_store=token_store if owns_tokens else None,
            gift_aggregation_delay_ms=settings.gifts.aggregation_delay_ms,
            clock=clock,
        )

    return {name: build for name in WEBSOCKET_PLATFORMS}


def _default_config_path() -> Path | None:
    for candidate in (Path("config/config.yaml"), Path("config/config.ini")):
        if candidate.exists():
            return candidate
    return None


def build_runtime(
    settings: Settings,
    clock: ClockPort | None = None,
    broadcaster: BroadcasterPort | None = None,
    effects: EffectsPort | None = None,
    stream_detector: StreamDetectorPort | None = None,
    adapter_constructors: Mapping[str, AdapterFactory] | None = None,
) -> StreamRuntime:
    clock = clock or SystemClock()
    bus = InProcessEventBus()
    config = ConfigService(settings, bus=bus)

    obs_connection = None
    if broadcaster is None:
        if settings.obs.enabled:
            obs_connection = ObsWebSocketBroadcaster(settings.obs)
            broadcaster = obs_connection
        else:
            broadcaster = LogBroadcaster()
    if effects is None:
        effects = BroadcasterEffects(broadcaster, clock) if settings.obs.enabled else LogEffects(clock)

    goals = GoalTracker(config, broadcaster) if settings.goals.enabled else None
    vfx = VFXCommandService(config, effects, clock, bus=bus)
    cooldowns = CommandCooldownService(config, clock, bus=bus)
    display_queue = DisplayQueue(broadcaster, config, clock, bus=bus, goals=goals)
    notifications = NotificationManager(
        config,
        display_queue,
        clock,
        vfx=vfx,
        bus=bus,
        goals=goals,
        spam_detector=DonationSpamDetector(config, clock),
    )
    if stream_detector is None and settings.general.stream_detection_enabled:
        stream_detector = HttpStreamDetector(settings.detector)
    lifecycle = PlatformLifecycleService(config, bus, clock, stream_detector=stream_detector)

    runtime: StreamRuntime | None = None

    async def shutdown() -> None:
        if runtime is not None:
            await runtime.shutdown()

    graceful_exit = GracefulExitService(
        settings.graceful_exit.target_message_count,
        shutdown,
        timeout_sec=settings.graceful_exit.force_exit_timeout_sec,
    )
    chat_router = ChatNotificationRouter(
        config,
        display_queue,
        vfx=vfx,
        cooldowns=cooldowns,
        user_tracking=UserTrackingService(),
        graceful_exit=graceful_exit,
        connection_time=lifecycle.get_platform_connection_time,
    )
    router = PlatformEventRouter(
        bus,
        config,
        chat_router,
        notifications,
        runtime_handlers=default_runtime_handlers(),
    )
    runtime = StreamRuntime(
        config=config,
        bus=bus,
        lifecycle=lifecycle,
        router=router,
        chat_router=chat_router,
        notifications=notifications,
        display_queue=display_queue,
        vfx=vfx,
        cooldowns=cooldowns,
        adapter_constructors=dict(adapter_constructors or default_adapters(settings, clock)),
        graceful_exit=graceful_exit,
        broadcaster_connection=obs_connection,
    )
    return runtime


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream notification engine")
    parser.add_argument(
        "--config",
        type=Path,
        default=_default_config_path(),
        help="Path to config YAML/JSON/INI (default: config/config.yaml if present)",
    )
    parser.add_argument(
        "--exit-after",
        type=int,
        default=None,
        help="Shut down after this many chat messages",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def main() -> None:
    load_dotenv()
    args = parse_args()
    settings = load_settings(args.config)
    if args.exit_after is not None:
        settings.graceful_exit.target_message_count = args.exit_after
    if args.debug:
        settings.general.debug_enabled = True
        settings.logging.level = "DEBUG"
    configure_logging(
        settings.logging.level,
        settings.logging.style,
        settings.logging.console,
        settings.logging.file_path,
    )
    silence_httpx_logs()

    runtime = build_runtime(settings)

    try:
        try:
            import uvloop

            uvloop.run(runtime.run())
        except ImportError:
            asyncio.run(runtime.run())
    except KeyboardInterrupt:
        logger.info("runtime_shutdown", reason="interrupt")


if __name__ == "__main__":
    main()
