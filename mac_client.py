#!/usr/bin/env python3
"""text-correction Mac client：選取文字 → 熱鍵 → 串流校對 → 浮動 diff 視窗。

用法：
    export OPENAI_API_KEY=sk-...
    python3 mac_client.py

操作：
    選取任意文字後按 Ctrl+Shift+Space → 開始校正（浮動視窗即時顯示 diff）
    ⌘+Enter → 複製校正後文字並貼上（取代原本的選取）
    Esc     → 取消並關閉視窗

依賴（Mac 端）：
    pip3 install requests pynput pyperclip pyobjc

macOS 設定：
    系統設定 > 隱私權與安全性 > 輔助使用 → 允許 Terminal
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import subprocess
import sys
import tempfile
import threading
import time

from pynput import keyboard

from rewrite_session import RewriteSession, SessionBusyError
from text_correction import (
    COMPARE_THRESHOLD,
    CORRECTION_TIMEOUT,
    DEFAULT_LANGUAGE,
    DEFAULT_MODEL,
    AuthError,
    OpenAICorrectionService,
    positive_int,
)
from text_diff import format_stats

# --- 設定 ---
COPY_WAIT = 0.1  # 送出 Cmd+C 後等待剪貼簿更新的時間（秒）
CTRL_KEYS = (keyboard.Key.ctrl_l, keyboard.Key.ctrl_r)
SHIFT_KEYS = (keyboard.Key.shift_l, keyboard.Key.shift_r)
CMD_KEYS = (keyboard.Key.cmd, keyboard.Key.cmd_r)

# --- 浮動 diff 視窗（HUD） ---
# 在 macOS 上用 PyObjC（AppKit）於螢幕中央顯示半透明視窗
# stdin 每行一個 JSON 指令：status / diff / stats / error，或 HIDE / EXIT
# 若環境沒有 AppKit，則回退為 osascript 通知
OVERLAY_SCRIPT = r'''
import sys, threading, queue, time, json

TEXTS = {
    "correcting": "✍️ 校正中...",
    "copied":     "✅ 已複製並貼上",
    "cancelled":  "⏹ 已取消",
}
HINT = "複製並貼上 ⌘+Enter ｜ 關閉 Esc"

try:
    from AppKit import (
        NSApplication, NSWindow, NSTextField, NSTextView, NSScrollView,
        NSColor, NSFont, NSBackingStoreBuffered, NSScreen,
        NSTimer, NSMakeRect, NSView, NSBezierPath,
        NSFontAttributeName, NSForegroundColorAttributeName,
        NSBackgroundColorAttributeName, NSStrikethroughStyleAttributeName,
        NSStrikethroughColorAttributeName, NSKernAttributeName,
    )
    from Foundation import NSObject, NSAttributedString, NSMutableAttributedString
    HAS_APPKIT = True
except ImportError:
    HAS_APPKIT = False

if not HAS_APPKIT:
    # Fallback: osascript notifications（只通知狀態、統計與錯誤）
    import subprocess
    for line in sys.stdin:
        try:
            msg = json.loads(line)
        except ValueError:
            continue
        kind = msg.get("type")
        if kind == "status":
            text = TEXTS.get(msg.get("stage", ""), msg.get("stage", ""))
        elif kind == "stats":
            text = msg.get("text", "")
        elif kind == "error":
            text = "❌ " + msg.get("message", "Error")
        else:
            continue
        text = text.replace('"', "'")
        subprocess.Popen(
            ["osascript", "-e",
             'display notification "' + text + '" with title "AI 潤飾"'],
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
        )
    sys.exit(0)

# ---- PyObjC 浮動視窗 ----
_cmd_queue = queue.Queue()
_window = None
_text_view = None
_footer = None
_visible = False
_hide_at = 0

def _stdin_reader():
    for line in sys.stdin:
        cmd = line.strip()
        if cmd:
            _cmd_queue.put(cmd)
    _cmd_queue.put("EXIT")

class _RoundedBG(NSView):
    """圓角半透明深色背景。"""
    def drawRect_(self, rect):
        NSColor.colorWithCalibratedRed_green_blue_alpha_(0.12, 0.12, 0.15, 0.92).set()
        NSBezierPath.bezierPathWithRoundedRect_xRadius_yRadius_(
            self.bounds(), 12, 12,
        ).fill()

def _font():
    return NSFont.fontWithName_size_("Yuanti TC", 17) or NSFont.systemFontOfSize_(17)

def _attributed(segments):
    """equal＝基本樣式、insert＝綠底、delete＝紅底 + 紅色刪除線。"""
    result = NSMutableAttributedString.alloc().init()
    font = _font()
    for seg in segments:
        attrs = {
            NSFontAttributeName: font,
            NSForegroundColorAttributeName: NSColor.whiteColor(),
            NSKernAttributeName: 1.5,
        }
        if seg["kind"] == "insert":
            attrs[NSBackgroundColorAttributeName] = \
                NSColor.colorWithCalibratedRed_green_blue_alpha_(0.0, 0.5, 0.0, 0.3)
        elif seg["kind"] == "delete":
            attrs[NSStrikethroughStyleAttributeName] = 1  # NSUnderlineStyleSingle
            attrs[NSStrikethroughColorAttributeName] = NSColor.redColor()
            attrs[NSBackgroundColorAttributeName] = \
                NSColor.colorWithCalibratedRed_green_blue_alpha_(0.5, 0.0, 0.0, 0.3)
        result.appendAttributedString_(
            NSAttributedString.alloc().initWithString_attributes_(seg["text"], attrs)
        )
    return result

def _set_text(text):
    _text_view.textStorage().setAttributedString_(_attributed(
        [{"kind": "equal", "text": text}]
    ))

def _show():
    global _visible
    if not _visible:
        _window.orderFront_(None)
        _visible = True

def _hide():
    global _visible
    _window.orderOut_(None)
    _visible = False

class _Poller(NSObject):
    """每 50ms 檢查一次 stdin 佇列。"""
    def tick_(self, timer):
        global _hide_at
        now = time.time()
        if _hide_at and now >= _hide_at:
            _hide_at = 0
            _hide()
        try:
            while True:
                cmd = _cmd_queue.get_nowait()
                if cmd == "EXIT":
                    NSApplication.sharedApplication().terminate_(None)
                    return
                if cmd == "HIDE":
                    _hide()
                    continue
                try:
                    msg = json.loads(cmd)
                except ValueError:
                    continue
                kind = msg.get("type")
                if kind == "status":
                    stage = msg.get("stage", "")
                    _footer.setStringValue_(TEXTS.get(stage, stage))
                    if stage == "correcting":
                        _hide_at = 0
                        _set_text(msg.get("text", ""))
                        _show()
                    elif stage in ("copied", "cancelled"):
                        _hide_at = now + 0.8
                elif kind == "diff":
                    _text_view.textStorage().setAttributedString_(
                        _attributed(msg.get("segments", []))
                    )
                    _text_view.scrollToEndOfDocument_(None)
                    _show()
                elif kind == "stats":
                    _footer.setStringValue_(msg.get("text", "") + "    " + HINT)
                elif kind == "error":
                    message = msg.get("message", "Error")
                    _footer.setStringValue_("❌ " + message)
                    _set_text("重寫文字時發生錯誤：" + message)
                    _show()
                    _hide_at = now + 3.0
        except queue.Empty:
            pass

def main():
    global _window, _text_view, _footer
    app = NSApplication.sharedApplication()
    app.setActivationPolicy_(2)  # Prohibited：不顯示 Dock 圖示

    scr = NSScreen.mainScreen().visibleFrame()
    W = max(int(scr.size.width * 0.5), 400)
    H = max(int(scr.size.height * 0.25), 250)
    x = scr.origin.x + (scr.size.width - W) / 2
    y = scr.origin.y + (scr.size.height - H) / 2

    _window = NSWindow.alloc().initWithContentRect_styleMask_backing_defer_(
        NSMakeRect(x, y, W, H), 0, NSBackingStoreBuffered, False,
    )
    _window.setLevel_(3)  # NSFloatingWindowLevel
    _window.setOpaque_(False)
    _window.setBackgroundColor_(NSColor.clearColor())
    _window.setHasShadow_(True)

    bg = _RoundedBG.alloc().initWithFrame_(NSMakeRect(0, 0, W, H))
    _window.setContentView_(bg)

    scroll = NSScrollView.alloc().initWithFrame_(NSMakeRect(16, 40, W - 32, H - 56))
    scroll.setHasVerticalScroller_(True)
    scroll.setDrawsBackground_(False)
    scroll.setBorderType_(0)
    _text_view = NSTextView.alloc().initWithFrame_(NSMakeRect(0, 0, W - 32, H - 56))
    _text_view.setEditable_(False)
    _text_view.setDrawsBackground_(False)
    _text_view.textContainer().setWidthTracksTextView_(True)
    scroll.setDocumentView_(_text_view)
    bg.addSubview_(scroll)

    _footer = NSTextField.alloc().initWithFrame_(NSMakeRect(16, 10, W - 32, 22))
    _footer.setEditable_(False)
    _footer.setBezeled_(False)
    _footer.setDrawsBackground_(False)
    _footer.setTextColor_(NSColor.colorWithCalibratedRed_green_blue_alpha_(0.45, 0.44, 0.47, 1.0))
    _footer.setFont_(NSFont.systemFontOfSize_(12))
    bg.addSubview_(_footer)

    threading.Thread(target=_stdin_reader, daemon=True).start()
    poller = _Poller.alloc().init()
    NSTimer.scheduledTimerWithTimeInterval_target_selector_userInfo_repeats_(
        0.05, poller, b"tick:", None, True,
    )
    app.run()

if __name__ == "__main__":
    main()
'''


class TextCorrectionClient:
    def __init__(self, model: str = DEFAULT_MODEL,
                 language: str = DEFAULT_LANGUAGE,
                 compare_threshold: int = COMPARE_THRESHOLD,
                 timeout: float = CORRECTION_TIMEOUT,
                 paste: bool = True):
        self.model = model
        self.language = language
        self.compare_threshold = compare_threshold
        self.timeout = timeout
        self.paste = paste

        self.service = None
        self.session: RewriteSession | None = None
        self.loop = None
        self._result_text = ""
        self._overlay_proc = None
        self._overlay_script_path = None
        self._pressed: set = set()

    def start(self):
        """啟動主迴圈。"""
        try:
            self.service = OpenAICorrectionService(
                model=self.model,
                language=self.language,
                timeout=self.timeout,
            )
        except AuthError as e:
            print(f"  ✗ {e}：請設定 OPENAI_API_KEY 環境變數")
            sys.exit(1)

        print(f"text-correction client")
        print(f"  Model:     {self.model}")
        print(f"  Language:  {self.language}")
        print(f"  Threshold: {self.compare_threshold} chars")
        print(f"  Timeout:   {self.timeout:g}s")
        print(f"  Paste:     {'clipboard+Cmd+V' if self.paste else 'clipboard only'}")
        print(f"")
        print(f"  [選取文字 + Ctrl+Shift+Space] → 校正")
        print(f"  [⌘+Enter]                    → 複製並貼上")
        print(f"  [Esc]                        → 取消/關閉")
        print(f"  [Ctrl+C] → 結束")
        print()

        # 啟動浮動視窗
        self._start_overlay()

        # 在背景執行 session 的 event loop
        self.loop = asyncio.new_event_loop()
        loop_thread = threading.Thread(target=self._run_event_loop, daemon=True)
        loop_thread.start()

        # 在主執行緒啟動按鍵監聽
        with keyboard.Listener(
            on_press=self._on_key_press,
            on_release=self._on_key_release,
        ) as listener:
            try:
                listener.join()
            except KeyboardInterrupt:
                print("\nShutting down.")
                self._stop_overlay()

    def _run_event_loop(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    # --- 熱鍵 ---

    def _on_key_press(self, key):
        """按鍵按下時。"""
        self._pressed.add(key)
        ctrl = any(k in self._pressed for k in CTRL_KEYS)
        shift = any(k in self._pressed for k in SHIFT_KEYS)
        cmd = any(k in self._pressed for k in CMD_KEYS)

        if key == keyboard.Key.space and ctrl and shift:
            # 按鍵 callback 不可阻塞：複製選取文字要等剪貼簿更新
            threading.Thread(target=self._trigger_correction, daemon=True).start()
        elif key == keyboard.Key.enter and cmd:
            threading.Thread(target=self._copy_back, daemon=True).start()
        elif key == keyboard.Key.esc:
            self._dismiss()

    def _on_key_release(self, key):
        """按鍵放開時。"""
        self._pressed.discard(key)

    # --- 校正 ---

    def _trigger_correction(self):
        text = self._get_selected_text()
        if not text or not text.strip():
            print("  ✗ 無法獲取選中文字")
            return
        print(f"  ● Correcting {len(text)} chars...", end="", flush=True)
        asyncio.run_coroutine_threadsafe(self._correct(text), self.loop)

    async def _correct(self, text: str):
        """取消進行中的 session，再以新 session 開始校正。"""
        if self.session and self.session.is_rewriting:
            self.session.cancel()
        self._result_text = ""

        session = RewriteSession(
            self.service,
            compare_threshold=self.compare_threshold,
            timeout=self.timeout,
            on_diff_update=self._on_diff_update,
            on_stats_update=self._on_stats_update,
            on_error=self._on_error,
            on_settled=lambda: self._on_settled(session),
        )
        self.session = session
        self._send_overlay({"type": "status", "stage": "correcting", "text": text})
        try:
            await session.start(text)
        except (SessionBusyError, ValueError) as e:
            print(f"\n  ✗ {e}")

    def _on_diff_update(self, segments):
        n = sum(len(s.text) for s in segments if s.kind != "delete")
        print(f"\r  ≈ {n} chars", end="", flush=True)
        self._send_overlay({
            "type": "diff",
            "segments": [s.to_dict() for s in segments],
        })

    def _on_stats_update(self, stats):
        line = format_stats(stats, self.model)
        print(f"\n  {line}")
        self._send_overlay({"type": "stats", "text": line})

    def _on_error(self, kind: str, message: str):
        print(f"\n  ✗ Error ({kind}): {message}")
        self._send_overlay({"type": "error", "message": message[:80]})

    def _on_settled(self, session: RewriteSession):
        if session is not self.session:
            return
        self._result_text = session.corrected_text
        preview = self._result_text[:80]
        print(f"  Done → {preview}{'...' if len(self._result_text) > 80 else ''}")

    def _dismiss(self):
        """取消進行中的 session 並關閉視窗。"""
        session = self.session
        if session and session.is_rewriting:
            self.loop.call_soon_threadsafe(session.cancel)
            print("\n  ⏹ Cancelled")
            self._send_overlay({"type": "status", "stage": "cancelled"})
        else:
            self._hide_overlay()
        self._result_text = ""

    def _copy_back(self):
        """複製校正後文字並貼上。"""
        if not self._result_text:
            print("  ✗ 尚無校正結果")
            return
        self._output_text(self._result_text)
        print("  ✓ 已複製校正後文字")
        self._send_overlay({"type": "status", "stage": "copied"})
        self._result_text = ""

    # --- 剪貼簿 ---

    @staticmethod
    def _get_selected_text() -> str | None:
        """送出 Cmd+C，剪貼簿內容有變化時視為選取文字。"""
        import pyperclip

        try:
            old_contents = pyperclip.paste()
        except Exception:
            old_contents = None

        try:
            subprocess.run([
                "osascript", "-e",
                'tell application "System Events" to keystroke "c" using command down'
            ], check=True, capture_output=True, timeout=2)
        except (subprocess.SubprocessError, FileNotFoundError) as e:
            print(f"  ✗ Copy failed: {e}")
            return None

        time.sleep(COPY_WAIT)
        try:
            new_contents = pyperclip.paste()
        except Exception as e:
            print(f"  ✗ Clipboard unavailable: {e}")
            return None

        if new_contents and new_contents != old_contents:
            return new_contents
        return None

    def _output_text(self, text: str):
        """透過剪貼簿貼上文字。"""
        try:
            # 使用 macOS pbcopy 設定剪貼簿
            proc = subprocess.Popen(
                ["pbcopy"],
                stdin=subprocess.PIPE,
            )
            proc.communicate(text.encode("utf-8"))

            if self.paste:
                # Cmd+V 貼上
                time.sleep(0.05)
                subprocess.run([
                    "osascript", "-e",
                    'tell application "System Events" to keystroke "v" using command down'
                ], check=True, capture_output=True)
        except FileNotFoundError:
            # 沒有 pbcopy 的環境 → 回退到 pyperclip
            import pyperclip
            pyperclip.copy(text)
            print("  (clipboard only - paste manually with Cmd+V)")

    # --- 浮動視窗管理 ---

    def _start_overlay(self):
        """啟動浮動 diff 視窗。"""
        try:
            fd, path = tempfile.mkstemp(suffix=".py", prefix="text_correction_overlay_")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(OVERLAY_SCRIPT)
            self._overlay_script_path = path

            self._overlay_proc = subprocess.Popen(
                [sys.executable, path],
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            print("  ✓ Overlay started")
        except Exception as e:
            print(f"  (overlay unavailable: {e})")
            self._overlay_proc = None

    def _send_overlay(self, message: dict):
        """送一行 JSON 指令給浮動視窗。"""
        self._write_overlay(json.dumps(message, ensure_ascii=False) + "\n")

    def _hide_overlay(self):
        """隱藏浮動視窗。"""
        self._write_overlay("HIDE\n")

    def _write_overlay(self, line: str):
        if not self._overlay_proc or not self._overlay_proc.stdin:
            return
        try:
            self._overlay_proc.stdin.write(line.encode("utf-8"))
            self._overlay_proc.stdin.flush()
        except (BrokenPipeError, OSError):
            self._overlay_proc = None

    def _stop_overlay(self):
        """結束浮動視窗程序。"""
        if self._overlay_proc:
            try:
                self._overlay_proc.terminate()
                self._overlay_proc.wait(timeout=2)
            except Exception:
                pass
        if self._overlay_script_path:
            try:
                os.unlink(self._overlay_script_path)
            except Exception:
                pass


def main():
    parser = argparse.ArgumentParser(
        description="text-correction Mac client: hotkey proofreading with live diff",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Setup (Mac):
  pip3 install requests pynput pyperclip pyobjc
  export OPENAI_API_KEY=sk-...

  # Grant permissions in System Settings:
  #   Privacy & Security > Accessibility > Terminal

Usage:
  python3 mac_client.py
  python3 mac_client.py --model gpt-4o --threshold 50
        """,
    )
    parser.add_argument("-m", "--model", default=DEFAULT_MODEL, help=f"Model (default: {DEFAULT_MODEL})")
    parser.add_argument("-l", "--language", default=DEFAULT_LANGUAGE, help=f"Prompt language (default: {DEFAULT_LANGUAGE})")
    parser.add_argument("--threshold", type=positive_int, default=COMPARE_THRESHOLD,
                        help=f"Re-diff after N new chars (default: {COMPARE_THRESHOLD})")
    parser.add_argument("--timeout", type=float, default=CORRECTION_TIMEOUT,
                        help=f"Overall timeout in seconds (default: {CORRECTION_TIMEOUT:g})")
    parser.add_argument(
        "--no-paste",
        action="store_true",
        help="Clipboard only, don't auto-paste with Cmd+V",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    client = TextCorrectionClient(
        model=args.model,
        language=args.language,
        compare_threshold=args.threshold,
        timeout=args.timeout,
        paste=not args.no_paste,
    )
    client.start()


if __name__ == "__main__":
    main()
