"""Client-side bot detection.

Runs in the visitor's environment and produces the untrusted payload
posted to /api/verify-human. Checks are independent: every check runs,
and a check that raises contributes nothing and is listed under
checks["errors"] instead of counting for or against the visitor.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from veilgate.environment import BrowserEnvironment
from veilgate.models import ScoreRecord, SignalCategory, UrlParams

logger = logging.getLogger(__name__)

WEBDRIVER_WEIGHT = 45
HEADLESS_WEIGHT_PER_SIGNAL = 15
HEADLESS_WEIGHT_CAP = 45
NAVIGATOR_WEIGHT_PER_ISSUE = 10
PERMISSION_WEIGHT = 20
AUTOMATION_ARTIFACT_WEIGHT = 50
MISSING_RENDERING_WEIGHT = 15

BASE_FONTS = ("monospace", "sans-serif", "serif")
TEST_FONTS = (
    "Arial",
    "Verdana",
    "Times New Roman",
    "Courier New",
    "Georgia",
    "Palatino",
    "Garamond",
    "Comic Sans MS",
    "Trebuchet MS",
    "Impact",
)

_SELENIUM_GLOBALS = ("_Selenium_IDE_Recorder",)
_SELENIUM_ATTRIBUTES = ("selenium", "driver")
_CHROMEDRIVER_GLOBALS = (
    "cdc_adoQpoasnfa76pfcZLmcfl_Array",
    "cdc_adoQpoasnfa76pfcZLmcfl_Promise",
    "cdc_adoQpoasnfa76pfcZLmcfl_Symbol",
)
_PLAYWRIGHT_GLOBALS = ("__playwright__", "__pw_manual", "__PW_inspect")
_NIGHTMARE_GLOBALS = ("__nightmare",)
_PHANTOM_GLOBALS = ("callPhantom", "_phantom")


class DetectorConfig(BaseModel):
    """Tunable detector options. Every field can be overridden on its own."""

    cdp_weight: float = 50
    behavior_weight: float = 40
    fingerprint_weight: float = 30
    timing_weight: float = 25
    navigator_weight: float = 20
    threshold: float = 70
    behavior_timeout: int = Field(default=3000, description="Milliseconds to wait for interaction")

    def with_overrides(self, **overrides: Any) -> DetectorConfig:
        """Return a copy with the given options replaced."""
        unknown = set(overrides) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown detector options: {', '.join(sorted(unknown))}")
        return self.model_copy(update=overrides)


class DetectionSummary(BaseModel):
    """Human-readable outcome of a detection run."""

    is_bot: bool
    confidence: int
    score: float
    verdict: str
    details: dict[str, Any]
    behaviors: dict[str, bool]


class DetectionResult(BaseModel):
    """Everything the detector reports back to the server."""

    is_bot: bool
    score: float
    signals: list[str] = Field(default_factory=list)
    checks: dict[str, Any] = Field(default_factory=dict)
    behaviors: dict[str, bool] = Field(default_factory=dict)
    fingerprint: dict[str, Any] = Field(default_factory=dict)
    threshold: float = 70

    def to_payload(self, url_params: UrlParams | None = None) -> dict[str, Any]:
        """Build the JSON body for POST /api/verify-human."""
        return {
            "fingerprint": self.fingerprint,
            "behaviors": self.behaviors,
            "clientScore": self.score,
            "checks": self.checks,
            "urlParams": url_params.model_dump() if url_params else None,
        }

    def summary(self) -> DetectionSummary:
        """Summarize the run with a confidence percentage and a label."""
        if self.score >= 100:
            verdict = "Definite Bot"
        elif self.score >= 70:
            verdict = "Likely Bot"
        elif self.score >= 40:
            verdict = "Suspicious"
        else:
            verdict = "Likely Human"
        return DetectionSummary(
            is_bot=self.score >= self.threshold,
            confidence=min(round(self.score / 150 * 100), 100),
            score=self.score,
            verdict=verdict,
            details=self.checks,
            behaviors=self.behaviors,
        )


def simple_hash(value: str) -> str:
    """Reduce a string to a short base-36 hash.

    Computes the 32-bit signed ``h * 31 + c`` rolling hash over UTF-16
    code units, as browsers do for canvas fingerprints.
    """
    h = 0
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(h)


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    sign = "-" if number < 0 else ""
    number = abs(number)
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return sign + "".join(reversed(out))


class _StackProbe:
    """Object whose stack is only read when something serializes it."""

    def __init__(self) -> None:
        self.touched = False

    @property
    def stack(self) -> str:
        self.touched = True
        return ""


class ClientDetector:
    """Runs every detection check against one browser environment."""

    def __init__(self, env: BrowserEnvironment, config: DetectorConfig | None = None) -> None:
        self.env = env
        self.config = config or DetectorConfig()
        self.record = ScoreRecord(category=SignalCategory.CLIENT)
        self.checks: dict[str, Any] = {}
        self.fingerprint: dict[str, Any] = {}

    def detect(self) -> DetectionResult:
        """Run all checks, generate the fingerprint and collect the result."""
        steps: list[tuple[str, Callable[[], object]]] = [
            ("cdp", self.detect_cdp),
            ("webdriver", self.detect_webdriver),
            ("headless", self.detect_headless),
            ("permissions", self.check_permissions),
            ("navigator", self.check_navigator_inconsistencies),
            ("automation", self.check_automation_artifacts),
            ("fingerprint", self.generate_fingerprint),
        ]
        for name, step in steps:
            self._isolated(name, step)

        self.checks["behaviorScore"] = 0
        score = self.record.total
        return DetectionResult(
            is_bot=score >= self.config.threshold,
            score=score,
            signals=list(self.record.signals),
            checks=self.checks,
            behaviors=self.env.behavior_flags(),
            fingerprint=self.fingerprint,
            threshold=self.config.threshold,
        )

    def _isolated(self, name: str, step: Callable[[], object]) -> None:
        checkpoint = (len(self.record.signals), self.record.total)
        try:
            step()
        except Exception as exc:  # noqa: BLE001
            del self.record.signals[checkpoint[0] :]
            self.record.total = checkpoint[1]
            self.checks.setdefault("errors", {})[name] = f"{type(exc).__name__}: {exc}"
            logger.debug("Detector check %s failed: %s", name, exc)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def detect_cdp(self) -> bool:
        """Detect an attached debugger protocol client.

        Logging an object to an inspected console makes the debugger
        serialize it, which reads its stack without anyone asking.
        """
        probe = _StackProbe()
        self.env.console_debug(probe)
        detected = probe.touched
        self.checks["cdp"] = detected
        if detected:
            self.record.add_points("cdp", self.config.cdp_weight)
        return detected

    def detect_webdriver(self) -> bool:
        """Check navigator.webdriver."""
        detected = self.env.navigator.webdriver is True
        self.checks["webdriver"] = detected
        if detected:
            self.record.add_points("webdriver", WEBDRIVER_WEIGHT)
        return detected

    def detect_headless(self) -> list[str]:
        """Count structural anomalies typical of headless browsers."""
        nav = self.env.navigator
        found = []
        if re.search(r"HeadlessChrome", nav.user_agent, re.IGNORECASE):
            found.append("headless-ua")
        if not self.env.has_global("chrome") and re.search(r"Chrome", nav.user_agent, re.I):
            found.append("missing-chrome-object")
        if nav.plugins_count == 0:
            found.append("no-plugins")
        if nav.mime_types_count == 0:
            found.append("no-mimetypes")
        if not nav.languages:
            found.append("no-languages")
        if any(self.env.has_global(g) for g in _PHANTOM_GLOBALS):
            found.append("phantomjs")

        self.checks["headlessSignals"] = found
        if found:
            weight = min(len(found) * HEADLESS_WEIGHT_PER_SIGNAL, HEADLESS_WEIGHT_CAP)
            self.record.add_points("headless", weight)
        return found

    def check_permissions(self) -> bool:
        """Compare the notifications permission query with Notification.permission.

        Browsers report an unset permission as "default" on Notification
        and "prompt" on the permissions API, so those two agree.
        """
        nav = self.env.navigator
        if not nav.has_permissions or nav.notification_query_state is None:
            return False
        if self.env.notification_permission is None:
            return False

        declared = self.env.notification_permission
        # Notification says "default" where the permissions API says "prompt".
        declared = "prompt" if declared == "default" else declared
        inconsistent = nav.notification_query_state != declared
        if inconsistent:
            self.checks["permissionInconsistency"] = True
            self.record.add_points("permission-inconsistency", PERMISSION_WEIGHT)
        return inconsistent

    def check_navigator_inconsistencies(self) -> list[str]:
        """Cross-check declared navigator fields against each other."""
        nav = self.env.navigator
        ua = nav.user_agent
        issues = []

        if re.search(r"Win", ua):
            expected_platform = "Win32"
        elif re.search(r"Mac", ua):
            expected_platform = "MacIntel"
        elif re.search(r"Linux", ua):
            expected_platform = "Linux x86_64"
        else:
            expected_platform = ""
        if expected_platform and nav.platform != expected_platform:
            issues.append("platform-mismatch")

        if nav.language and nav.languages and nav.language not in nav.languages:
            issues.append("language-mismatch")

        if nav.hardware_concurrency is not None and (
            nav.hardware_concurrency > 32 or nav.hardware_concurrency == 0
        ):
            issues.append("suspicious-cpu")

        if nav.device_memory and (nav.device_memory > 32 or nav.device_memory < 0.25):
            issues.append("suspicious-memory")

        if re.search(r"Chrome", ua):
            expected_vendor = "Google Inc."
        elif re.search(r"Safari", ua):
            expected_vendor = "Apple Computer, Inc."
        else:
            expected_vendor = ""
        if expected_vendor and nav.vendor != expected_vendor:
            issues.append("vendor-mismatch")

        self.checks["navigatorIssues"] = issues
        if issues:
            weight = min(len(issues) * NAVIGATOR_WEIGHT_PER_ISSUE, self.config.navigator_weight)
            self.record.add_points("navigator-issues", weight)
        return issues

    def check_automation_artifacts(self) -> list[str]:
        """Look for globals and attributes left behind by automation frameworks."""
        env = self.env
        nav = env.navigator
        artifacts = []

        if any(env.has_global(g) for g in _SELENIUM_GLOBALS) or any(
            env.document_attributes.get(a) for a in _SELENIUM_ATTRIBUTES
        ):
            artifacts.append("selenium")
        if any(env.has_global(g) for g in _CHROMEDRIVER_GLOBALS):
            artifacts.append("chrome-automation")
        if nav.webdriver is None and "HeadlessChrome" in nav.user_agent:
            artifacts.append("puppeteer")
        if any(env.has_global(g) for g in _PLAYWRIGHT_GLOBALS):
            artifacts.append("playwright")
        if any(env.has_global(g) for g in _NIGHTMARE_GLOBALS):
            artifacts.append("nightmare")

        self.checks["automationArtifacts"] = artifacts
        if artifacts:
            self.record.add_points("automation-artifacts", AUTOMATION_ARTIFACT_WEIGHT)
        return artifacts

    # ------------------------------------------------------------------
    # Fingerprint
    # ------------------------------------------------------------------

    def generate_fingerprint(self) -> dict[str, Any]:
        """Collect the device fingerprint.

        Each component is gathered independently; one that fails is
        reported as null. Missing canvas or WebGL output is itself a
        modest penalty.
        """
        components: list[tuple[str, Callable[[], Any]]] = [
            ("canvas", self.canvas_fingerprint),
            ("webgl", self.webgl_fingerprint),
            ("audio", self.audio_fingerprint),
            ("fonts", self.font_fingerprint),
            ("screen", self.screen_fingerprint),
            ("browser", self.browser_fingerprint),
        ]
        for key, collect in components:
            try:
                self.fingerprint[key] = collect()
            except Exception as exc:  # noqa: BLE001
                self.fingerprint[key] = None
                self.checks.setdefault("errors", {})[f"fingerprint.{key}"] = (
                    f"{type(exc).__name__}: {exc}"
                )

        if not self.fingerprint["canvas"] or not self.fingerprint["webgl"]:
            self.record.add_points("missing-rendering", MISSING_RENDERING_WEIGHT)
        return self.fingerprint

    def canvas_fingerprint(self) -> str | None:
        data_url = self.env.canvas_data_url
        return simple_hash(data_url) if data_url else None

    def webgl_fingerprint(self) -> dict[str, Any] | None:
        gl = self.env.webgl
        if gl is None:
            return None
        return {
            "vendor": gl.vendor,
            "renderer": gl.renderer,
            "version": gl.version,
            "shadingLanguageVersion": gl.shading_language_version,
            "extensionCount": gl.extension_count,
        }

    def audio_fingerprint(self) -> dict[str, Any] | None:
        audio = self.env.audio
        if audio is None:
            return None
        return {
            "sampleRate": audio.sample_rate,
            "state": audio.state,
            "baseLatency": audio.base_latency,
            "outputLatency": audio.output_latency,
        }

    def font_fingerprint(self) -> list[str]:
        """Detect installed fonts from text width deltas against generic families."""
        baseline = {base: self.env.measure_text(base) for base in BASE_FONTS}
        detected = []
        for font in TEST_FONTS:
            for base in BASE_FONTS:
                if self.env.measure_text(f"{font}, {base}") != baseline[base]:
                    detected.append(font)
                    break
        return detected

    def screen_fingerprint(self) -> dict[str, Any]:
        screen = self.env.screen
        return {
            "width": screen.width,
            "height": screen.height,
            "availWidth": screen.avail_width,
            "availHeight": screen.avail_height,
            "colorDepth": screen.color_depth,
            "pixelDepth": screen.pixel_depth,
            "devicePixelRatio": self.env.device_pixel_ratio,
            "orientation": screen.orientation,
        }

    def browser_fingerprint(self) -> dict[str, Any]:
        nav = self.env.navigator
        return {
            "userAgent": nav.user_agent,
            "platform": nav.platform,
            "language": nav.language,
            "languages": nav.languages,
            "cookieEnabled": nav.cookie_enabled,
            "doNotTrack": nav.do_not_track,
            "hardwareConcurrency": nav.hardware_concurrency,
            "deviceMemory": nav.device_memory,
            "maxTouchPoints": nav.max_touch_points,
            "vendor": nav.vendor,
            "vendorSub": nav.vendor_sub,
            "productSub": nav.product_sub,
            "timezone": self.env.timezone,
            "timezoneOffset": self.env.timezone_offset,
        }


def detect(env: BrowserEnvironment, **overrides: Any) -> DetectionResult:
    """Run the detector with optional config overrides.

    Args:
        env: The environment to inspect.
        **overrides: DetectorConfig fields to replace, e.g. ``cdp_weight=60``.

    Returns:
        The detection result.
    """
    config = DetectorConfig().with_overrides(**overrides)
    return ClientDetector(env, config).detect()
