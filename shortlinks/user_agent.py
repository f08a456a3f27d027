"""User-agent enrichment for persisted clicks.

Parsing is delegated to the ``user-agents`` package. Device classification
walks a fixed order and stops at the first match:

    1. explicit device hint (tablet, mobile, tv, wearable, console)
    2. mobile operating system name
    3. bot/crawler keyword in the raw string
    4. desktop

An empty user agent yields an all-null result; a parser failure is logged
and also yields nulls.
"""

import logging
import re
from dataclasses import dataclass

from prometheus_client import Counter
from user_agents import parse as parse_ua

from shortlinks.enums import DeviceType

__all__ = ["ParsedUserAgent", "UserAgentParser", "classify_device_type"]

logger = logging.getLogger("shortlinks.user_agent")

USER_AGENT_PARSE_FAILURES_TOTAL = Counter(
    "shortlinks_user_agent_parse_failures_total",
    "User agents the parser could not handle",
)

MOBILE_OS_NAMES = ("android", "ios", "windows phone", "blackberry os", "blackberry")
BOT_KEYWORDS = ("bot", "crawler", "spider", "scraper")

_TV_MARKERS = re.compile(r"smart-?tv|hbbtv|appletv|apple tv|googletv|android tv|roku|crkey|aftb|aftt|aftm|bravia|netcast|web0s|tizen.*tv", re.I)
_WEARABLE_MARKERS = re.compile(r"watch|wear ?os|glass", re.I)
_CONSOLE_MARKERS = re.compile(r"playstation|xbox|nintendo", re.I)

UNKNOWN_FAMILIES = frozenset({"", "other"})


@dataclass(frozen=True)
class ParsedUserAgent:
    browser: str | None = None
    browser_version: str | None = None
    os: str | None = None
    os_version: str | None = None
    device_type: DeviceType | None = None


def _known(value: str | None) -> str | None:
    if value is None or value.strip().lower() in UNKNOWN_FAMILIES:
        return None
    return value.strip()


def _device_hint(raw: str, device_family: str | None, is_tablet: bool, is_mobile: bool) -> DeviceType | None:
    haystack = f"{raw} {device_family or ''}"
    if _CONSOLE_MARKERS.search(haystack):
        return DeviceType.CONSOLE
    if _TV_MARKERS.search(haystack):
        return DeviceType.TV
    if _WEARABLE_MARKERS.search(haystack):
        return DeviceType.WEARABLE
    if is_tablet:
        return DeviceType.TABLET
    if is_mobile:
        return DeviceType.MOBILE
    return None


def classify_device_type(hint: DeviceType | None, os_name: str | None, raw: str) -> DeviceType:
    if hint is not None:
        return hint
    if os_name and os_name.lower() in MOBILE_OS_NAMES:
        return DeviceType.MOBILE
    lowered = raw.lower()
    if any(keyword in lowered for keyword in BOT_KEYWORDS):
        return DeviceType.BOT
    return DeviceType.DESKTOP


class UserAgentParser:
    def parse(self, raw: str | None) -> ParsedUserAgent:
        if not raw or not raw.strip():
            return ParsedUserAgent()

        try:
            agent = parse_ua(raw)
        except Exception as exc:
            USER_AGENT_PARSE_FAILURES_TOTAL.inc()
            logger.warning(f"User agent parsing failed: {exc}")
            return ParsedUserAgent()

        os_name = _known(agent.os.family)
        hint = _device_hint(raw, _known(agent.device.family), agent.is_tablet, agent.is_mobile)
        return ParsedUserAgent(
            browser=_known(agent.browser.family),
            browser_version=_known(agent.browser.version_string),
            os=os_name,
            os_version=_known(agent.os.version_string),
            device_type=classify_device_type(hint, os_name, raw),
        )
