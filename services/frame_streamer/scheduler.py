# services/frame_streamer/scheduler.py
from __future__ import annotations
import asyncio
from typing import Callable, Optional

from common.logging import get_logger
from common.schemas import FramePayload, TargetInfo, VisualMetadata, WindowInfo, format_elapsed
from services.frame_streamer.collaborators import (
    DeliverySink, Encoder, FrameSource, TargetLocator, call_maybe_async,
)
from services.frame_streamer.detector import (
    NO_CHANGE, ChangeAnalysis, ChangeDetector, DetectorState, PassthroughDetector,
)
from services.frame_streamer.errors import EncodeFailure, TargetLost, TransientCaptureFailure
from services.frame_streamer.frames import Frame, annotate
from services.frame_streamer.session import Clock, Session, SessionState

log = get_logger("frame_streamer")

END_STOPPED = "stopped"
END_TARGET_LOST = "target_lost"
END_ERROR = "error"

class CaptureScheduler:
    """
    Per-session capture loop on an absolute deadline grid.

    Each tick waits for session.next_deadline, resolves the target, grabs a
    frame, gates it through the change detector and, when it should be sent,
    encodes it and publishes the payload into the session's FrameSlot. The
    deadline always advances by exactly one frame interval from its previous
    value, whatever the tick did or how long it took; it is never rebased to
    "now". A separate delivery task drains the slot into the sink, so a slow
    sink only ever costs dropped intermediate payloads, never capture cadence.
    on_finish fires once the loop has ended, before the last payload drains.
    """

    def __init__(
        self,
        session: Session,
        source: FrameSource,
        locator: TargetLocator,
        encoder: Encoder,
        sink: Optional[DeliverySink] = None,
        *,
        clock: Optional[Clock] = None,
        drift_slack_s: float = 0.5,
        deliver_timeout_s: float = 5.0,
        on_finish: Optional[Callable[[Session], None]] = None,
    ):
        self.session = session
        self.source = source
        self.locator = locator
        self.encoder = encoder
        self.sink = sink
        self.clock = clock or Clock()
        self.drift_slack_s = drift_slack_s
        self.deliver_timeout_s = deliver_timeout_s
        self.on_finish = on_finish

        det_cfg = session.request.detection
        if det_cfg.enabled:
            self.detector = ChangeDetector(det_cfg, session.keyframe_interval_ticks)
        else:
            self.detector = PassthroughDetector()
        self.state = DetectorState()
        self._last_relative = 0.0

    # ---------------- lifecycle ----------------

    async def run(self) -> str:
        """Run until cancelled or the target is lost. Returns the end reason."""
        s = self.session
        deliver_task = None
        if self.sink is not None:
            deliver_task = asyncio.create_task(self._deliver_loop(), name=f"deliver:{s.id}")

        reason = END_ERROR
        try:
            reason = await self._loop()
        except asyncio.CancelledError:
            s.cancel()
            reason = END_STOPPED
            raise
        except Exception as e:
            log.exception(f"[session:error] session={s.id} capture loop failed: {e}")
            reason = END_ERROR
        finally:
            s.end_reason = reason
            s.state = SessionState.STOPPED
            s.slot.close()
            if self.on_finish is not None:
                self.on_finish(s)
            if deliver_task is not None:
                if s.is_cancelled:
                    deliver_task.cancel()
                await asyncio.gather(deliver_task, return_exceptions=True)
            log.info(f"[session:end] session={s.id} reason={reason} ticks={s.ticks} emitted={s.emitted}")
        return reason

    async def _loop(self) -> str:
        s = self.session
        if s.state is SessionState.STARTING:
            s.state = SessionState.RUNNING

        while not s.is_cancelled:
            wait_s = s.next_deadline - self.clock.now()
            if wait_s > 0:
                if await self.clock.wait(wait_s, s.cancelled):
                    break
            elif wait_s < -self.drift_slack_s:
                log.warning(f"[drift] session={s.id} tick={s.ticks} behind schedule by {-wait_s * 1000:.0f}ms")

            if s.is_cancelled:
                break

            try:
                await self._tick()
            except TargetLost:
                log.warning(f"[target:lost] session={s.id} target={s.target_ref}")
                return END_TARGET_LOST
            except TransientCaptureFailure as e:
                log.info(f"[tick:skip] session={s.id} tick={s.ticks} capture failed: {e}")
            except EncodeFailure as e:
                log.warning(f"[tick:skip] session={s.id} tick={s.ticks} {e}")
            except Exception as e:
                log.error(f"[capture:error] session={s.id} tick={s.ticks}: {e}")
            finally:
                s.ticks += 1
                s.advance_deadline()

        return END_STOPPED

    # ---------------- one tick ----------------

    async def _tick(self):
        s = self.session
        target = await call_maybe_async(self.locator.resolve, s.target_ref)
        if target is None or not target.is_valid:
            raise TargetLost(s.target_ref)
        s.target = target

        frame = await call_maybe_async(self.source.capture, target, s.request.max_width)
        if frame is None or not frame.is_valid:
            raise TransientCaptureFailure("no frame")

        analysis = self.detector.analyze(frame, self.state)
        if not analysis.should_send:
            self.state = analysis.state
            log.debug(f"[tick:skip] session={s.id} tick={s.ticks} ratio={analysis.changed_ratio}")
            return

        payload = await self._build_payload(frame, target, analysis)
        if s.is_cancelled:
            return

        # baseline only moves once the frame is actually out
        self.state = analysis.state
        s.slot.publish(payload)
        s.emitted += 1
        log.debug(
            f"[tick:emit] session={s.id} tick={s.ticks} tag={analysis.event_tag} "
            f"ratio={analysis.changed_ratio} t={payload.relative_time:.3f}"
        )

    async def _build_payload(self, frame: Frame, target: TargetInfo, analysis: ChangeAnalysis) -> FramePayload:
        s = self.session
        if s.request.overlay:
            elapsed = s.relative_time(self.clock.now())
            frame = await asyncio.to_thread(annotate, frame, elapsed, analysis.event_tag)

        image = await call_maybe_async(self.encoder.encode, frame, s.request.quality)

        # timestamp taken after encoding: when the frame was observed, not when the tick began
        rel = max(s.relative_time(self.clock.now()), self._last_relative)
        self._last_relative = rel

        return FramePayload(
            session_id=s.id,
            relative_time=rel,
            timestamp=format_elapsed(rel),
            system_time=self.clock.wall().isoformat(),
            window=WindowInfo(title=target.title, bbox=target.bbox),
            visual=VisualMetadata(has_change=analysis.event_tag != NO_CHANGE, event_tag=analysis.event_tag),
            width=frame.width,
            height=frame.height,
            mime_type=getattr(self.encoder, "mime_type", "image/jpeg"),
            image=image,
        )

    # ---------------- delivery ----------------

    async def _deliver_loop(self):
        s = self.session
        async for payload in s.slot:
            try:
                await asyncio.wait_for(self.sink.deliver(payload), timeout=self.deliver_timeout_s)
            except asyncio.TimeoutError:
                log.warning(f"[deliver:error] session={s.id} sink timed out after {self.deliver_timeout_s}s")
            except Exception as e:
                log.error(f"[deliver:error] session={s.id} sink failed: {e}")
