"""User-agent parsing and device classification tests."""

import pytest

from shortlinks.enums import DeviceType
from shortlinks.user_agent import ParsedUserAgent, UserAgentParser, classify_device_type

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)
ANDROID_PHONE = (
    "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)
GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
PLAYSTATION = "Mozilla/5.0 (PlayStation 4 3.11) AppleWebKit/537.73 (KHTML, like Gecko)"


@pytest.fixture
def parser() -> UserAgentParser:
    return UserAgentParser()


def test_desktop_chrome(parser: UserAgentParser) -> None:
    parsed = parser.parse(CHROME_WINDOWS)
    assert parsed.browser == "Chrome"
    assert parsed.browser_version.startswith("120")
    assert parsed.os == "Windows"
    assert parsed.device_type is DeviceType.DESKTOP


@pytest.mark.parametrize(
    "raw,expected",
    [
        (IPHONE, DeviceType.MOBILE),
        (ANDROID_PHONE, DeviceType.MOBILE),
        (IPAD, DeviceType.TABLET),
        (GOOGLEBOT, DeviceType.BOT),
        (PLAYSTATION, DeviceType.CONSOLE),
    ],
)
def test_device_classes(parser: UserAgentParser, raw: str, expected: DeviceType) -> None:
    assert parser.parse(raw).device_type is expected


def test_mobile_os_names(parser: UserAgentParser) -> None:
    assert parser.parse(IPHONE).os == "iOS"
    assert parser.parse(ANDROID_PHONE).os == "Android"


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_empty_user_agent_yields_nulls(parser: UserAgentParser, raw) -> None:
    assert parser.parse(raw) == ParsedUserAgent()


def test_classification_order() -> None:
    assert classify_device_type(DeviceType.TABLET, "Android", "bot") is DeviceType.TABLET
    assert classify_device_type(None, "Android", "SomeCrawler/1.0") is DeviceType.MOBILE
    assert classify_device_type(None, None, "SomeCrawler/1.0") is DeviceType.BOT
    assert classify_device_type(None, "Linux", "curl/8.0") is DeviceType.DESKTOP
