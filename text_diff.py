"""text-correction：字元層級 diff 與樣式化輸出。

校正對象多為 CJK 密集文字，因此以「字元」而非單字/行為單位比對。
字元指 grapheme cluster（regex 的 \\X）：emoji 膚色、國旗、ZWJ 序列與
組合符號都視為一個字元，不會被拆成兩個樣式片段。

    compute_diff(old, new)  → 每個字元一個 DiffOp（LCS 回溯）
    render(script)          → 合併相鄰同類 op 成 StyledSegment
    format_ansi(segments)   → 終端機顯示（新增＝綠底、刪除＝紅色刪除線）

compute_diff 為 O(m·n) 時間與空間；長文在串流時若每個 token 都重算，
成本會主導延遲，所以 RewriteSession 以 compare_threshold 節流。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

import regex

EQUAL = "equal"
INSERT = "insert"
DELETE = "delete"

KINDS = (EQUAL, INSERT, DELETE)

# --- ANSI 樣式 ---
ANSI_RESET = "\x1b[0m"
ANSI_STYLES = {
    EQUAL: "",
    INSERT: "\x1b[30;42m",  # 綠底
    DELETE: "\x1b[31;9m",   # 紅色 + 刪除線
}


@dataclass(frozen=True)
class DiffOp:
    kind: str
    text: str


@dataclass(frozen=True)
class StyledSegment:
    """顯示用片段：equal＝基本樣式、insert＝新增標記、delete＝刪除線。"""
    kind: str
    text: str

    @property
    def strikethrough(self) -> bool:
        return self.kind == DELETE

    @property
    def highlighted(self) -> bool:
        return self.kind != EQUAL

    def to_dict(self) -> dict:
        return {"kind": self.kind, "text": self.text}


@dataclass(frozen=True)
class DiffStats:
    character_count: int
    change_count: int

    def to_dict(self) -> dict:
        return {
            "character_count": self.character_count,
            "change_count": self.change_count,
        }


def split_graphemes(text: str) -> list[str]:
    """把字串切成 grapheme cluster（使用者眼中的一個字）。"""
    return regex.findall(r"\X", text)


def compute_diff(old: str | Sequence[str], new: str | Sequence[str]) -> list[DiffOp]:
    """計算 old → new 的最小編輯腳本（每個字元一個 op）。

    dp[i][j] 為 old[:i] 與 new[:j] 的 LCS 長度。回溯時：
    字元相同 → equal；否則 dp[i][j-1] >= dp[i-1][j] 時優先 insert，
    其餘 delete。這個平手規則決定多個最小腳本中會產生哪一個。
    """
    if isinstance(old, str):
        old = split_graphemes(old)
    if isinstance(new, str):
        new = split_graphemes(new)

    m = len(old)
    n = len(new)

    dp = [[0] * (n + 1) for _ in range(m + 1)]
    for i in range(1, m + 1):
        row = dp[i]
        prev = dp[i - 1]
        a = old[i - 1]
        for j in range(1, n + 1):
            if a == new[j - 1]:
                row[j] = prev[j - 1] + 1
            else:
                row[j] = max(prev[j], row[j - 1])

    script: list[DiffOp] = []
    i, j = m, n
    while i > 0 or j > 0:
        if i > 0 and j > 0 and old[i - 1] == new[j - 1]:
            script.append(DiffOp(EQUAL, old[i - 1]))
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or dp[i][j - 1] >= dp[i - 1][j]):
            script.append(DiffOp(INSERT, new[j - 1]))
            j -= 1
        else:
            script.append(DiffOp(DELETE, old[i - 1]))
            i -= 1

    # 回溯是由尾端往前
    script.reverse()
    return script


def render(script: Iterable[DiffOp | StyledSegment]) -> list[StyledSegment]:
    """把相鄰同類 op 合併成 StyledSegment（線性、保留順序）。

    也接受已合併的 segment，所以 render(render(x)) == render(x)。
    """
    segments: list[StyledSegment] = []
    kind = None
    buf: list[str] = []
    for op in script:
        if not op.text:
            continue
        if op.kind != kind and buf:
            segments.append(StyledSegment(kind, "".join(buf)))
            buf = []
        kind = op.kind
        buf.append(op.text)
    if buf:
        segments.append(StyledSegment(kind, "".join(buf)))
    return segments


def source_text(script: Iterable[DiffOp | StyledSegment]) -> str:
    """equal + delete → 原文。"""
    return "".join(op.text for op in script if op.kind != INSERT)


def target_text(script: Iterable[DiffOp | StyledSegment]) -> str:
    """equal + insert → 新文字。"""
    return "".join(op.text for op in script if op.kind != DELETE)


def count_changes(segments: Iterable[DiffOp | StyledSegment]) -> int:
    """計算「改變」數量。

    以合併後的片段為單位，連續的非 equal 片段（例如 delete 緊接 insert 的替換）
    算作一處改變。
    """
    changes = 0
    in_change = False
    for seg in render(segments):
        if seg.kind == EQUAL:
            in_change = False
        elif not in_change:
            changes += 1
            in_change = True
    return changes


def diff_stats(corrected: str, segments: Iterable[DiffOp | StyledSegment]) -> DiffStats:
    return DiffStats(
        character_count=len(split_graphemes(corrected)),
        change_count=count_changes(segments),
    )


def diff_texts(old: str, new: str) -> list[StyledSegment]:
    return render(compute_diff(old, new))


def format_ansi(segments: Iterable[StyledSegment], color: bool = True) -> str:
    """終端機顯示。color=False 時以 [+…] / [-…] 標記。"""
    parts = []
    for seg in segments:
        if seg.kind == EQUAL:
            parts.append(seg.text)
        elif color:
            parts.append(f"{ANSI_STYLES[seg.kind]}{seg.text}{ANSI_RESET}")
        elif seg.kind == INSERT:
            parts.append(f"[+{seg.text}]")
        else:
            parts.append(f"[-{seg.text}]")
    return "".join(parts)


def format_stats(stats: DiffStats, model: str | None = None) -> str:
    line = f"字元數: {stats.character_count} | 改變: {stats.change_count}"
    if model:
        line += f" | 模型: {model}"
    return line
