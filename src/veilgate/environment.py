"""Snapshot of a visitor's browser environment as seen by the detector.

The detector never talks to a real browser. It reads everything through
a BrowserEnvironment, which can be built from a JSON capture, from a test
preset, or subclassed to probe a live automation session.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

_BEHAVIOR_EVENTS = ("mouseMove", "click", "scroll", "keyboard", "touch")


class NavigatorInfo(BaseModel):
    """Declared navigator properties."""

    user_agent: str = ""
    platform: str = ""
    language: str | None = None
    languages: list[str] | None = None
    webdriver: bool | None = Field(
        default=False, description="navigator.webdriver; None when the property is undefined"
    )
    plugins_count: int = 0
    mime_types_count: int = 0
    hardware_concurrency: int | None = None
    device_memory: float | None = None
    vendor: str = ""
    vendor_sub: str = ""
    product_sub: str = ""
    cookie_enabled: bool = True
    do_not_track: str | None = None
    max_touch_points: int = 0
    has_permissions: bool = True
    notification_query_state: str | None = Field(
        default=None, description="State returned by permissions.query({name: 'notifications'})"
    )


class ScreenInfo(BaseModel):
    """Display geometry."""

    width: int = 0
    height: int = 0
    avail_width: int = 0
    avail_height: int = 0
    color_depth: int = 24
    pixel_depth: int = 24
    orientation: str | None = None


class WebGLInfo(BaseModel):
    """Graphics driver identification strings."""

    vendor: str
    renderer: str
    version: str = ""
    shading_language_version: str = ""
    extension_count: int = 0


class AudioInfo(BaseModel):
    """Audio subsystem characteristics."""

    sample_rate: float
    state: str = "suspended"
    base_latency: float | None = None
    output_latency: float | None = None


class BrowserEnvironment(BaseModel):
    """Everything the client detector can introspect in one page load."""

    navigator: NavigatorInfo = Field(default_factory=NavigatorInfo)
    screen: ScreenInfo = Field(default_factory=ScreenInfo)
    device_pixel_ratio: float = 1.0
    timezone: str = "UTC"
    timezone_offset: int = 0
    window_globals: list[str] = Field(
        default_factory=list, description="Names of notable globals defined on window"
    )
    document_attributes: dict[str, str] = Field(
        default_factory=dict, description="Attributes on document.documentElement"
    )
    notification_permission: str | None = Field(
        default=None, description="Notification.permission, None if the API is missing"
    )
    devtools_attached: bool = Field(
        default=False, description="A debugger protocol client is attached to the page"
    )
    canvas_data_url: str | None = Field(
        default=None, description="toDataURL() of the reference drawing; None without a 2D context"
    )
    webgl: WebGLInfo | None = None
    audio: AudioInfo | None = None
    text_widths: dict[str, float] = Field(
        default_factory=dict,
        description="Measured width of the probe string keyed by CSS font family list",
    )
    interactions: list[str] = Field(
        default_factory=list, description="User interaction events observed on the page"
    )

    def has_global(self, name: str) -> bool:
        """Whether window defines a global of this name."""
        return name in self.window_globals

    def console_debug(self, value: object) -> None:
        """Emulate console.debug().

        An attached debugger serializes logged objects for its own
        display, which reads their stack property.
        """
        if self.devtools_attached:
            getattr(value, "stack", None)

    def measure_text(self, font: str) -> float:
        """Width of the probe string rendered in a CSS font family list.

        Families that are not installed fall through to the last entry
        in the list, exactly as a browser would render them.
        """
        if font in self.text_widths:
            return self.text_widths[font]
        fallback = font.rsplit(",", 1)[-1].strip()
        return self.text_widths.get(fallback, 0.0)

    def behavior_flags(self) -> dict[str, bool]:
        """Interaction flags keyed by event name."""
        seen = set(self.interactions)
        return {event: event in seen for event in _BEHAVIOR_EVENTS}
