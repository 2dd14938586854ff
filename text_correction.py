#!/usr/bin/env python3
"""text-correction：選取文字 → OpenAI 串流校對 → 字元層級 diff。

把文字送到 OpenAI 相容的 chat completions API（stream=True），
邊接收 token 邊比對原文，最後輸出已校正文字與差異。

用法：
    text-correction "今天天氣很好，我想去公圓走走。"   # 校正 + 彩色 diff
    echo "..." | text-correction -                     # 從 stdin 讀取
    text-correction "..." --output json                # JSON 輸出
    text-correction "..." --copy                       # 校正後複製到剪貼簿
    text-correction diff "原文" "新文字"                 # 離線 diff（不呼叫 API）
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import AsyncIterator, Iterator


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
DEFAULT_MODEL = os.environ.get("CORRECTION_MODEL", "gpt-4o-mini")
DEFAULT_LANGUAGE = os.environ.get("DEFAULT_LANGUAGE", "zh")
TEMPERATURE = _float_env("CORRECTION_TEMPERATURE", 0.7)
MAX_TOKENS = _int_env("CORRECTION_MAX_TOKENS", 1000)
# 整體逾時（秒）：超過就放棄這次校正
CORRECTION_TIMEOUT = _float_env("CORRECTION_TIMEOUT", 30.0)
# 累積多少新字元後才重新比對
COMPARE_THRESHOLD = _int_env("COMPARE_THRESHOLD", 100)
# 串流結束後、最終比對前的等待時間（秒）
SETTLE_DELAY = _float_env("SETTLE_DELAY", 0.5)
CONNECT_TIMEOUT = 10

PROMPTS_DIR = Path(__file__).parent / "prompts"

log = logging.getLogger("text_correction.service")


# --- 錯誤 ---


class CorrectionError(Exception):
    """校正服務錯誤的基底類別。對本次 session 而言都是終止性錯誤。"""

    @property
    def kind(self) -> str:
        return type(self).__name__


class AuthError(CorrectionError):
    """API 金鑰無效或未設定。"""


class NetworkError(CorrectionError):
    """非 2xx 回應或連線失敗。status_code 為 None 代表傳輸層失敗。"""

    def __init__(self, status_code: int | None, message: str = ""):
        self.status_code = status_code
        if not message:
            message = (f"API error (HTTP {status_code})" if status_code
                       else "Network error")
        super().__init__(message)


class RateLimitError(CorrectionError):
    """HTTP 429：請稍後再試。"""


class CorrectionTimeout(CorrectionError):
    """超過整體逾時。"""


class EncodingError(CorrectionError):
    """請求內容無法序列化（程式缺陷）。"""


class InvalidResponseError(CorrectionError):
    """回應內容無法使用（例如沒有任何文字）。"""


# --- 依語言的提示詞 ---
_prompt_cache: dict[str, dict] = {}


def _load_prompt(lang: str) -> dict:
    """載入語言碼對應的提示詞（含快取）。"""
    if lang in _prompt_cache:
        return _prompt_cache[lang]

    # 依序嘗試：完整語言碼 → 基本語言碼（"zh-TW" → "zh"）→ en → DEFAULT_LANGUAGE
    lang_full = (lang or DEFAULT_LANGUAGE).lower()
    lang_base = lang_full.split("-")[0]

    for candidate in (lang_full, lang_base, "en", DEFAULT_LANGUAGE):
        prompt_file = PROMPTS_DIR / f"{candidate}.json"
        if prompt_file.exists():
            break
    else:
        raise CorrectionError(f"No prompt file for {lang!r} in {PROMPTS_DIR}")

    with open(prompt_file, encoding="utf-8") as f:
        data = json.load(f)

    _prompt_cache[lang] = data
    return data


def build_messages(text: str, language: str = DEFAULT_LANGUAGE) -> list[dict]:
    prompt_data = _load_prompt(language)

    messages = [{"role": "system", "content": prompt_data["system_prompt"]}]
    for shot in prompt_data.get("few_shot", []):
        messages.append({"role": "user", "content": shot["user"]})
        messages.append({"role": "assistant", "content": shot["assistant"]})

    user_template = prompt_data.get("user_template", "<text>\n{text}\n</text>")
    messages.append({"role": "user", "content": user_template.format(text=text)})
    return messages


# --- SSE 解析 ---

_DONE = object()


def parse_sse_line(line: str):
    """解析一行 SSE。

    Returns:
        片段文字；"[DONE]" 時回傳 _DONE；不含內容的行回傳 None
    """
    if not line or not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if data == "[DONE]":
        return _DONE
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        log.debug("Skipping malformed SSE line: %s", data[:80])
        return None

    if "error" in chunk:
        err = chunk["error"] or {}
        message = err.get("message", "unknown") if isinstance(err, dict) else str(err)
        raise NetworkError(None, f"API stream error: {message}")

    for choice in chunk.get("choices", []):
        content = (choice.get("delta") or {}).get("content")
        if content:
            return content
    return None


# --- 校正服務 ---


class CorrectionService:
    """校正服務介面：依序產生文字片段，串接後即為模型改寫後的全文。

    失敗時丟出 CorrectionError 的子類別（AuthError、NetworkError、
    RateLimitError、CorrectionTimeout、EncodingError）。
    """

    model = ""

    def stream(self, original: str) -> AsyncIterator[str]:
        raise NotImplementedError


class OpenAICorrectionService(CorrectionService):
    """OpenAI chat completions（stream=True）。

    requests 是同步的，所以在 daemon thread 讀取 SSE，
    再透過 asyncio.Queue 交給 event loop 上的消費者。
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        language: str = DEFAULT_LANGUAGE,
        base_url: str = OPENAI_BASE_URL,
        temperature: float = TEMPERATURE,
        max_tokens: int = MAX_TOKENS,
        timeout: float = CORRECTION_TIMEOUT,
    ):
        api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        if not api_key:
            raise AuthError("OPENAI_API_KEY is not set")
        self.api_key = api_key
        self.model = model
        self.language = language
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        log.info(f"API key loaded: {api_key[:5]}...")

    def build_request(self, text: str) -> dict:
        return {
            "model": self.model,
            "messages": build_messages(text, self.language),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
        }

    def iter_fragments(self, text: str,
                       stop: threading.Event | None = None,
                       opened: list | None = None) -> Iterator[str]:
        """同步讀取串流回應，逐一產生片段。

        stop 被設定時於下一行結束；opened 會收到 response 物件，
        讓其他執行緒可以直接 close() 解除阻塞中的 iter_lines。
        """
        import requests

        try:
            body = json.dumps(self.build_request(text),
                              ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EncodingError(f"Could not encode request: {e}") from e

        url = f"{self.base_url}/chat/completions"
        log.info(f"Sending request to {url} (model={self.model}, "
                 f"{len(text)} chars)")
        try:
            resp = requests.post(
                url,
                data=body,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {self.api_key}",
                },
                stream=True,
                timeout=(CONNECT_TIMEOUT, self.timeout),
            )
        except requests.Timeout as e:
            raise CorrectionTimeout(f"Request timed out: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(None, f"{type(e).__name__}: {e}") from e

        try:
            if opened is not None:
                opened.append(resp)
            if stop is not None and stop.is_set():
                return
            log.info(f"Response status: {resp.status_code}")
            if resp.status_code != 200:
                detail = resp.text[:500]
                log.error(f"API error response: {detail}")
                if resp.status_code in (401, 403):
                    raise AuthError(f"Authentication failed (HTTP {resp.status_code})")
                if resp.status_code == 429:
                    raise RateLimitError("Rate limit exceeded, try again later")
                raise NetworkError(resp.status_code)

            # SSE 不一定帶 charset，requests 會預設成 ISO-8859-1
            resp.encoding = "utf-8"
            total = 0
            for line in resp.iter_lines(decode_unicode=True):
                if stop is not None and stop.is_set():
                    log.info("Stream stopped by consumer")
                    return
                fragment = parse_sse_line(line)
                if fragment is _DONE:
                    break
                if fragment:
                    total += len(fragment)
                    yield fragment
            log.info(f"Stream complete ({total} chars)")
        except requests.Timeout as e:
            raise CorrectionTimeout(f"Stream timed out: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(None, f"{type(e).__name__}: {e}") from e
        finally:
            resp.close()

    async def stream(self, original: str) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        opened: list = []

        def _put(item) -> bool:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
                return True
            except RuntimeError:
                # event loop 已關閉
                stop.set()
                return False

        def _reader():
            try:
                for fragment in self.iter_fragments(original, stop, opened):
                    if not _put(("fragment", fragment)):
                        return
            except CorrectionError as e:
                if not stop.is_set():
                    _put(("error", e))
            except Exception as e:
                if stop.is_set():
                    # response 被消費端關閉
                    log.debug(f"Reader ended after close: {e}")
                    return
                log.exception("Unexpected error while reading stream")
                _put(("error", NetworkError(None, f"{type(e).__name__}: {e}")))
            else:
                _put(("end", None))

        threading.Thread(target=_reader, daemon=True).start()
        try:
            while True:
                tag, value = await queue.get()
                if tag == "end":
                    return
                if tag == "error":
                    raise value
                yield value
        finally:
            stop.set()
            for resp in opened:
                resp.close()


# --- CLI ---


def positive_int(value: str) -> int:
    """argparse type：至少為 1 的整數。"""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def _read_text(arg: str) -> str:
    if arg == "-":
        return sys.stdin.read()
    return arg


def _copy_to_clipboard(text: str) -> bool:
    try:
        import pyperclip
        pyperclip.copy(text)
        return True
    except Exception as e:
        print(f"  Clipboard failed: {e}", file=sys.stderr)
        return False


def _print_result(result, output: str, model: str) -> None:
    from text_diff import format_ansi, format_stats

    if output == "json":
        print(json.dumps({
            "text": result.corrected_text,
            "original": result.original_text,
            "segments": [s.to_dict() for s in result.segments],
            "stats": result.stats.to_dict(),
            "model": model,
        }, ensure_ascii=False, indent=2))
        return
    print(format_ansi(result.segments, color=(output == "text")))
    print(format_stats(result.stats, model))


async def run_correction(
    text: str,
    service: CorrectionService,
    compare_threshold: int = COMPARE_THRESHOLD,
    timeout: float = CORRECTION_TIMEOUT,
    settle_delay: float = SETTLE_DELAY,
    quiet: bool = False,
):
    """執行一次校正 session，回傳 SessionResult（失敗時為 None）。"""
    from rewrite_session import RewriteSession
    from text_diff import DELETE

    errors: list[tuple[str, str]] = []

    def on_diff_update(segments):
        if quiet:
            return
        n = sum(len(s.text) for s in segments if s.kind != DELETE)
        print(f"\r  ≈ {n} chars received", end="", file=sys.stderr, flush=True)

    def on_error(kind, message):
        errors.append((kind, message))

    session = RewriteSession(
        service,
        compare_threshold=compare_threshold,
        timeout=timeout,
        settle_delay=settle_delay,
        on_diff_update=on_diff_update,
        on_error=on_error,
    )
    result = await session.start(text)
    if not quiet:
        print("", file=sys.stderr)
    for kind, message in errors:
        print(f"Error ({kind}): {message}", file=sys.stderr)
    return result


def _diff_main(argv: list[str]) -> int:
    from text_diff import diff_stats, diff_texts, format_ansi, format_stats

    parser = argparse.ArgumentParser(
        prog="text-correction diff",
        description="Offline character-level diff (no API call)",
    )
    parser.add_argument("old", help="Original text ('-' for stdin)")
    parser.add_argument("new", help="Rewritten text")
    parser.add_argument("-o", "--output", default="text",
                        choices=["text", "json", "plain"], help="Output format")
    args = parser.parse_args(argv)

    old = _read_text(args.old)
    segments = diff_texts(old, args.new)
    stats = diff_stats(args.new, segments)
    if args.output == "json":
        print(json.dumps({
            "segments": [s.to_dict() for s in segments],
            "stats": stats.to_dict(),
        }, ensure_ascii=False, indent=2))
    else:
        print(format_ansi(segments, color=(args.output == "text")))
        print(format_stats(stats))
    return 0


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv

    # "diff" subcommand detection
    if argv and argv[0] == "diff":
        return _diff_main(argv[1:])

    parser = argparse.ArgumentParser(
        prog="text-correction",
        description="text-correction: 文字 → LLM 校對 → 字元層級 diff",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  text-correction "今天天氣很好，我想去公圓走走。"
  pbpaste | text-correction - --copy
  text-correction "..." --output json
  text-correction diff "公圓" "公園"

Environment:
  OPENAI_API_KEY, OPENAI_BASE_URL, CORRECTION_MODEL, CORRECTION_TIMEOUT,
  COMPARE_THRESHOLD, SETTLE_DELAY, DEFAULT_LANGUAGE
        """,
    )
    parser.add_argument("text", help="Text to correct ('-' for stdin)")
    parser.add_argument("-m", "--model", default=DEFAULT_MODEL,
                        help=f"Model (default: {DEFAULT_MODEL})")
    parser.add_argument("-l", "--language", default=DEFAULT_LANGUAGE,
                        help=f"Prompt language (default: {DEFAULT_LANGUAGE})")
    parser.add_argument("--threshold", type=positive_int, default=COMPARE_THRESHOLD,
                        help=f"Re-diff after N new chars (default: {COMPARE_THRESHOLD})")
    parser.add_argument("--timeout", type=float, default=CORRECTION_TIMEOUT,
                        help=f"Overall timeout in seconds (default: {CORRECTION_TIMEOUT:g})")
    parser.add_argument("-o", "--output", default="text",
                        choices=["text", "json", "plain"], help="Output format")
    parser.add_argument("--copy", action="store_true",
                        help="Copy the corrected text to the clipboard")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Suppress progress messages")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    text = _read_text(args.text)
    if not text.strip():
        print("Error: No text to correct", file=sys.stderr)
        return 2

    try:
        service = OpenAICorrectionService(
            model=args.model,
            language=args.language,
            timeout=args.timeout,
        )
    except AuthError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not args.quiet:
        print(f"[1/2] Correcting {len(text)} chars with {args.model}...",
              file=sys.stderr)

    try:
        result = asyncio.run(run_correction(
            text,
            service,
            compare_threshold=args.threshold,
            timeout=args.timeout,
            quiet=args.quiet,
        ))
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        return 130

    if result is None:
        return 1

    if not args.quiet:
        print("[2/2] Done", file=sys.stderr)
    _print_result(result, args.output, args.model)

    if args.copy and _copy_to_clipboard(result.corrected_text):
        if not args.quiet:
            print("  (copied to clipboard)", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
