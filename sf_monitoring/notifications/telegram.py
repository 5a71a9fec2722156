"""Telegram alert channel."""

from __future__ import annotations

import httpx

from ..models import Anomaly, MonitoringResults, Severity

TELEGRAM_MAX_MESSAGE_LEN = 3900

SEVERITY_ICONS = {
    Severity.CRITICAL: "🚨",
    Severity.HIGH: "⚠️",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "ℹ️",
}


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Pack whole lines into messages of at most ``max_len`` characters.

    An anomaly line is never split across messages unless it alone exceeds
    ``max_len``, in which case it is cut hard.
    """
    max_len = max(1, int(max_len))
    parts: list[str] = []
    current = ""
    for line in (text or "").strip().splitlines():
        while len(line) > max_len:
            if current:
                parts.append(current.rstrip())
                current = ""
            parts.append(line[:max_len])
            line = line[max_len:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > max_len:
            parts.append(current.rstrip())
            candidate = line
        current = candidate
    if current.strip() or not parts:
        parts.append(current.rstrip())
    return parts


def format_anomaly_message(anomalies: list[Anomaly], results: MonitoringResults) -> str:
    if not anomalies:
        return "✅ Apex Monitoring Report: All Clear"

    ordered = sorted(anomalies, key=lambda a: a.severity, reverse=True)
    lines = [f"⚠️ Apex Monitoring Alert: {len(anomalies)} anomaly(ies) detected", ""]
    if results.debug_logs is not None:
        lines.append(f"Errors in window: {results.debug_logs.summary.total_count}")
        lines.append("")
    for anomaly in ordered:
        icon = SEVERITY_ICONS.get(anomaly.severity, "•")
        lines.append(f"{icon} [{anomaly.severity.value}] {anomaly.type.value}: {anomaly.description}")
    return "\n".join(lines)


class TelegramChannel:
    def __init__(self, bot_token: str, chat_id: str, transport: httpx.AsyncBaseTransport | None = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.transport = transport

    async def send(self, text: str) -> list[dict]:
        """Send ``text`` in chunks; raises on the first rejected chunk."""
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        responses: list[dict] = []
        async with httpx.AsyncClient(transport=self.transport, timeout=15.0) as client:
            for part in split_telegram_message(text):
                try:
                    resp = await client.post(url, json={"chat_id": self.chat_id, "text": part})
                    data = resp.json()
                except (httpx.HTTPError, ValueError) as e:
                    msg = f"{type(e).__name__}: {e}"
                    raise RuntimeError(msg.replace(self.bot_token, "<redacted>")) from None
                if not data.get("ok"):
                    raise RuntimeError(f"Telegram rejected message: {data.get('description') or data}")
                responses.append(data)
        return responses
