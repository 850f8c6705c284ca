"""回复文本分块。

切点优先落在段落、换行、空格处，并且不落在 ``` 代码块内部。
单个代码块本身超过上限时才在块内换行处切开：当前分块补上结束标记，
下一分块以同一开始行（例如 ```python）重新打开代码块。
没有切开代码块时，各分块按空串拼接即可还原原文。

长度按 ``length`` 计量，默认是 Python 字符数；Telegram 等按 UTF-16 码元计数的渠道传入自己的计量函数。
"""

import re
from dataclasses import dataclass
from typing import Callable

from chatgate.config.schema import Config

SILENT_REPLY_TOKEN = "NO_REPLY"
DEFAULT_TEXT_CHUNK_LIMIT = 4000

_FENCE_LINE = re.compile(r"^ {0,3}(`{3,}|~{3,})", re.MULTILINE)
_BREAK_SEPARATORS = ("\n\n", "\n", " ", "\t")

TextLength = Callable[[str], int]


@dataclass(frozen=True)
class FenceSpan:
    start: int  # 开始行行首
    end: int  # 结束行行尾（含换行）；未闭合时为文末
    open_line: str  # 开始行原文，含换行
    marker: str  # ``` 或 ~~~ 等

    @property
    def body_start(self) -> int:
        return self.start + len(self.open_line)


def resolve_text_chunk_limit(config: Config, provider: str, hard_limit: int | None = None) -> int:
    """渠道配置 > 全局配置，再与渠道硬上限取小。"""
    section = config.provider_section(provider)
    limit = (section.text_chunk_limit if section else None) or config.messages.text_chunk_limit
    if limit <= 0:
        limit = DEFAULT_TEXT_CHUNK_LIMIT
    if hard_limit:
        limit = min(limit, hard_limit)
    return limit


def is_silent_reply(text: str | None) -> bool:
    return (text or "").strip() == SILENT_REPLY_TOKEN


def fence_spans(text: str) -> list[FenceSpan]:
    spans: list[FenceSpan] = []
    open_start: int | None = None
    open_marker = ""
    for m in _FENCE_LINE.finditer(text):
        marker = m.group(1)
        if open_start is None:
            open_start = m.start()
            open_marker = marker
        elif marker[0] == open_marker[0] and len(marker) >= len(open_marker):
            spans.append(_span(text, open_start, _line_end(text, m.end()), open_marker))
            open_start = None
    if open_start is not None:
        spans.append(_span(text, open_start, len(text), open_marker))
    return spans


def _line_end(text: str, pos: int) -> int:
    idx = text.find("\n", pos)
    return len(text) if idx == -1 else idx + 1


def _span(text: str, start: int, end: int, marker: str) -> FenceSpan:
    open_line = text[start:_line_end(text, start)]
    if not open_line.endswith("\n"):
        open_line += "\n"
    return FenceSpan(start, end, open_line, marker)


def _inside_fence(pos: int, spans: list[FenceSpan]) -> FenceSpan | None:
    for span in spans:
        if span.start < pos < span.end:
            return span
    return None


def _window_end(text: str, start: int, budget: int, length: TextLength) -> int:
    """从 start 起、长度不超过 budget 的最远位置；至少前进一个字符。"""
    if length is len:
        return min(len(text), start + max(budget, 1))
    used, end = 0, start
    while end < len(text):
        width = length(text[end])
        if used + width > budget and end > start:
            break
        used += width
        end += 1
    return end


def _pick_break(text: str, start: int, end: int, spans: list[FenceSpan]) -> int | None:
    for sep in _BREAK_SEPARATORS:
        idx = text.rfind(sep, start, end)
        while idx != -1:
            cut = idx + len(sep)
            if _inside_fence(cut, spans) is None:
                return cut
            idx = text.rfind(sep, start, idx)
    return None


def chunk_markdown_text(text: str, limit: int, length: TextLength = len) -> list[str]:
    if not text:
        return []
    if limit <= 0 or length(text) <= limit:
        return [text]

    spans = fence_spans(text)
    chunks: list[str] = []
    start = 0
    reopen = ""  # 上一分块在代码块内切开时，本分块要补的开始行
    while start < len(text):
        budget = limit - length(reopen)
        rest = text[start:]
        if length(rest) <= budget:
            chunks.append(reopen + rest)
            break

        end = _window_end(text, start, budget, length)
        cut = _pick_break(text, start, end, spans)
        if cut is not None:
            chunks.append(reopen + text[start:cut])
            reopen = ""
            start = cut
            continue

        fence = _inside_fence(end, spans)
        if fence is None:
            # 没有任何分隔符：硬切
            chunks.append(reopen + text[start:end])
            reopen = ""
            start = end
            continue

        # 超长代码块：在块内换行处切，补结束标记，下一块重新打开
        inner_end = _window_end(text, start, budget - length(fence.marker) - 1, length)
        idx = text.rfind("\n", max(start, fence.body_start), inner_end)
        cut = idx + 1 if idx != -1 else inner_end
        if cut <= start:
            cut = start + 1
        piece = text[start:cut]
        closing = fence.marker if piece.endswith("\n") else "\n" + fence.marker
        chunks.append(reopen + piece + closing)
        reopen = fence.open_line
        start = cut
    return chunks
