# services/frame_streamer/main.py
from __future__ import annotations
import asyncio, os, signal, sys
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from common.bus import EventBus
from common.logging import get_logger
from common.schemas import StreamRequest
from services.frame_streamer.collaborators import RedisStreamSink
from services.frame_streamer.errors import InvalidConfiguration
from services.frame_streamer.registry import SessionRegistry
from services.frame_streamer.screen import ScreenFrameSource, ScreenTargetLocator

log = get_logger("frame_streamer")

# ---------------- config ----------------

def load_config(config_path: str) -> Dict[str, Any]:
    with open(config_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise InvalidConfiguration(f"{config_path} must contain a mapping")
    return cfg

def parse_sessions(fs_cfg: Dict[str, Any]) -> List[StreamRequest]:
    raw = fs_cfg.get("sessions") or []
    if not isinstance(raw, list):
        raise InvalidConfiguration("frame_streamer.sessions must be a list")
    requests = []
    for i, item in enumerate(raw):
        try:
            requests.append(StreamRequest(**(item or {})))
        except (TypeError, ValidationError) as e:
            raise InvalidConfiguration(f"frame_streamer.sessions[{i}]: {e}") from e
    return requests

# ---------------- main ----------------

async def main(config_path: str = "config/config.yaml"):
    log.info("frame_streamer starting…")
    cfg = load_config(config_path)

    runtime_cfg = (cfg.get("runtime", {}) or {})
    fs_cfg      = (cfg.get("frame_streamer", {}) or {})

    redis_url     = os.getenv("REDIS_URL", runtime_cfg.get("redis_url", "redis://127.0.0.1:6379/0"))
    stream_out    = os.getenv("FS_STREAM_OUT", runtime_cfg.get("stream_frames", "frames.streamed"))
    stream_maxlen = int(runtime_cfg.get("stream_maxlen", 10000))
    drift_slack_ms = float(os.getenv("FS_DRIFT_SLACK_MS", fs_cfg.get("drift_slack_ms", 500)))
    deliver_timeout_s = float(fs_cfg.get("deliver_timeout_s", 5.0))

    requests = parse_sessions(fs_cfg)
    if not requests:
        log.warning("No sessions configured under frame_streamer.sessions; nothing to do")
        return

    bus = await EventBus(redis_url, maxlen=stream_maxlen).connect()
    sink = RedisStreamSink(bus, stream_out)
    registry = SessionRegistry(
        ScreenFrameSource(),
        ScreenTargetLocator(),
        drift_slack_s=drift_slack_ms / 1000.0,
        deliver_timeout_s=deliver_timeout_s,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # Windows event loops
            pass

    try:
        for req in requests:
            sid = await registry.start_request(req, sink=sink)
            log.info(f"Streaming target={req.target} session={sid} → stream={stream_out}")

        # exit when asked, or once every session has ended on its own
        while not stop_event.is_set() and registry.list_active():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
    finally:
        await registry.stop_all()
        await bus.close()
        log.info("frame_streamer stopped")

if __name__ == "__main__":
    asyncio.run(main(*sys.argv[1:2]))
