"""一次校正請求的生命週期：串流累積 → 節流比對 → 最終 diff。

狀態：
    idle → streaming → finalizing → settled
    streaming → failed / cancelled（之後回到 idle）

串流期間每收到一個片段就附加到 accumulator；
新內容累積到 compare_threshold 字元以上才重新比對（O(m·n) 成本），
串流結束後對完整文字再比對一次，作為最終結果。

事件（皆為選填的 callback）：
    on_diff_update(segments)   節流重算時、以及最終結果時
    on_stats_update(stats)     最終結果時
    on_error(kind, message)    失敗時（只會觸發一次）
    on_settled()               最終結果時
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from text_correction import (
    COMPARE_THRESHOLD,
    CORRECTION_TIMEOUT,
    SETTLE_DELAY,
    CorrectionError,
    CorrectionService,
    CorrectionTimeout,
    InvalidResponseError,
)
from text_diff import DiffOp, DiffStats, StyledSegment, compute_diff, diff_stats, render

log = logging.getLogger("text_correction.session")

IDLE = "idle"
STREAMING = "streaming"
FINALIZING = "finalizing"
SETTLED = "settled"
FAILED = "failed"
CANCELLED = "cancelled"


class SessionBusyError(RuntimeError):
    """已有校正在進行中。"""


class StreamAccumulator:
    """串流片段的累積區（只會附加）。"""
    __slots__ = ("compare_threshold", "_text", "displayed_length")

    def __init__(self, compare_threshold: int = COMPARE_THRESHOLD):
        if compare_threshold < 1:
            raise ValueError("compare_threshold must be >= 1")
        self.compare_threshold = compare_threshold
        self._text = ""
        self.displayed_length = 0  # 已反映在上次 diff 的字元數

    def __len__(self) -> int:
        return len(self._text)

    @property
    def text(self) -> str:
        return self._text

    @property
    def pending(self) -> int:
        """尚未反映在 diff 的新字元數。"""
        return len(self._text) - self.displayed_length

    def append(self, fragment: str) -> bool:
        """附加片段；回傳是否已累積足夠新內容、該重新比對。"""
        self._text += fragment
        return self.pending >= self.compare_threshold

    def mark_displayed(self) -> str:
        """比對觸發時呼叫：displayed_length 追上目前長度，回傳當下快照。"""
        snapshot = self._text
        self.displayed_length = len(snapshot)
        return snapshot


@dataclass
class SessionResult:
    original_text: str
    corrected_text: str
    script: list[DiffOp] = field(default_factory=list)
    segments: list[StyledSegment] = field(default_factory=list)
    stats: Optional[DiffStats] = None


class RewriteSession:
    """單一校正 session。同時只允許一個進行中的請求。"""

    def __init__(
        self,
        service: CorrectionService,
        compare_threshold: int = COMPARE_THRESHOLD,
        timeout: float = CORRECTION_TIMEOUT,
        settle_delay: float = SETTLE_DELAY,
        on_diff_update: Callable[[list[StyledSegment]], None] | None = None,
        on_stats_update: Callable[[DiffStats], None] | None = None,
        on_error: Callable[[str, str], None] | None = None,
        on_settled: Callable[[], None] | None = None,
    ):
        if compare_threshold < 1:
            raise ValueError("compare_threshold must be >= 1")
        self.service = service
        self.compare_threshold = compare_threshold
        self.timeout = timeout
        self.settle_delay = settle_delay
        self.on_diff_update = on_diff_update
        self.on_stats_update = on_stats_update
        self.on_error = on_error
        self.on_settled = on_settled

        self.state = IDLE
        self.outcome: str | None = None  # 最近一次的終止狀態
        self.original_text = ""
        self.accumulator = StreamAccumulator(compare_threshold)
        self.script: list[DiffOp] = []
        self.segments: list[StyledSegment] = []
        self.stats: DiffStats | None = None
        self._task: asyncio.Task | None = None
        self._cancelled = False

    @property
    def is_rewriting(self) -> bool:
        return self.state in (STREAMING, FINALIZING)

    @property
    def corrected_text(self) -> str:
        return self.accumulator.text.strip()

    async def start(self, original_text: str) -> SessionResult | None:
        """開始校正並等待結束。

        Returns:
            settled 時回傳 SessionResult；失敗或被取消時回傳 None
        Raises:
            SessionBusyError: 已有校正在進行中（不影響進行中的 session）
            ValueError: 原文為空
        """
        if self.is_rewriting:
            raise SessionBusyError("A correction is already in progress")
        if original_text is None or not original_text.strip():
            raise ValueError("Original text is empty")

        self.original_text = original_text
        self.accumulator = StreamAccumulator(self.compare_threshold)
        self.script = []
        self.segments = []
        self.stats = None
        self.outcome = None
        self._cancelled = False
        self.state = STREAMING
        log.info(f"Rewrite started ({len(original_text)} chars)")

        task = asyncio.ensure_future(self._run())
        self._task = task
        try:
            # 用 wait 而非直接 await：被 cancel() 取消時不把 CancelledError 丟給呼叫端
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # 呼叫端本身被取消（例如視窗關閉）
            self.cancel()
            raise

        if task.cancelled():
            # task 尚未開始執行就被取消時，_run 沒有機會重設狀態
            if self._task is task and self.state == CANCELLED:
                self.state = IDLE
                self.outcome = CANCELLED
            return None
        return task.result()

    def cancel(self) -> bool:
        """取消進行中的校正。之後抵達的片段都會被丟棄。"""
        if not self.is_rewriting:
            return False
        self._cancelled = True
        self.state = CANCELLED
        if self._task and not self._task.done():
            self._task.cancel()
        log.info("Rewrite cancelled")
        return True

    async def _run(self) -> SessionResult | None:
        try:
            # 串流完成 vs. 逾時：先到者勝，另一方被取消
            await asyncio.wait_for(self._consume(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._fail(CorrectionTimeout(
                f"No complete response within {self.timeout:g}s"))
            return None
        except CorrectionError as e:
            self._fail(e)
            return None
        except asyncio.CancelledError:
            self._reset(CANCELLED)
            raise
        except Exception as e:
            log.exception("Unexpected error during rewrite")
            self._fail(CorrectionError(f"{type(e).__name__}: {e}"))
            return None

        if self._cancelled:
            self._reset(CANCELLED)
            return None

        try:
            return await self._settle()
        except asyncio.CancelledError:
            self._reset(CANCELLED)
            raise

    async def _consume(self) -> None:
        """單一消費者：依抵達順序附加片段，必要時重新比對。"""
        stream = self.service.stream(self.original_text)
        try:
            async for fragment in stream:
                if self._cancelled:
                    break
                if self.accumulator.append(fragment):
                    await self._recompute()
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _recompute(self) -> None:
        snapshot = self.accumulator.mark_displayed()
        loop = asyncio.get_running_loop()
        script = await loop.run_in_executor(
            None, compute_diff, self.original_text, snapshot,
        )
        if self._cancelled:
            return
        self.script = script
        self.segments = render(script)
        log.debug(f"Diff recomputed at {len(snapshot)} chars "
                  f"({len(self.segments)} segments)")
        self._emit(self.on_diff_update, self.segments)

    async def _settle(self) -> SessionResult | None:
        self.state = FINALIZING
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        corrected = self.corrected_text
        if not corrected:
            self._fail(InvalidResponseError("API returned no text"))
            return None

        self.accumulator.mark_displayed()
        loop = asyncio.get_running_loop()
        script = await loop.run_in_executor(
            None, compute_diff, self.original_text, corrected,
        )
        if self._cancelled:
            self._reset(CANCELLED)
            return None

        self.script = script
        self.segments = render(script)
        self.stats = diff_stats(corrected, self.segments)
        self.state = SETTLED
        self.outcome = SETTLED
        log.info(f"Rewrite settled: {self.stats.character_count} chars, "
                 f"{self.stats.change_count} changes")

        self._emit(self.on_diff_update, self.segments)
        self._emit(self.on_stats_update, self.stats)
        self._emit(self.on_settled)
        return SessionResult(
            original_text=self.original_text,
            corrected_text=corrected,
            script=self.script,
            segments=self.segments,
            stats=self.stats,
        )

    def _is_current(self) -> bool:
        # cancel() 後立刻 start() 時，舊的 task 不可再動到新 session 的狀態
        return self._task is asyncio.current_task()

    def _fail(self, error: CorrectionError) -> None:
        if not self._is_current():
            return
        self.state = FAILED
        log.error(f"Rewrite failed: {error.kind}: {error}")
        self._emit(self.on_error, error.kind, str(error))
        self._reset(FAILED)

    def _reset(self, outcome: str) -> None:
        """回到 idle；不保留部分 diff。"""
        if not self._is_current():
            return
        self.outcome = outcome
        self.state = IDLE
        self.script = []
        self.segments = []
        self.stats = None

    @staticmethod
    def _emit(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            log.error(f"Callback {getattr(callback, '__name__', callback)} failed: {e}")
