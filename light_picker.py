#!/usr/bin/env python3
"""
Stream Deck Light Picker
Pick a color on a Stream Deck key and push it to Home Assistant lights.

Short press runs the external color picker and sends the new color to every
configured light. Holding the key past the delay re-sends the stored color.
"""

import asyncio
import base64
import io
import json
import logging
import math
import os
import re
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

import httpx
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import ImageContent, TextContent, Tool
from PIL import Image, ImageDraw, ImageFont
from StreamDeck.DeviceManager import DeviceManager
from StreamDeck.ImageHelpers import PILHelper

# Configure logging
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("streamdeck-light-picker")


# ============================================================================
# Configuration
# ============================================================================

CONFIG_DIR = Path.home() / ".streamdeck-light-picker"
SETTINGS_FILE = CONFIG_DIR / "settings.json"

# Connection defaults for buttons that have no per-button values yet
DEFAULT_URL = os.environ.get("URL", "")
DEFAULT_TOKEN = os.environ.get("TOKEN", "")
DEFAULT_LIGHTS = os.environ.get("ENTITY_ID", "")

PICK_COLOR_COMMAND = os.environ.get("PICK_COLOR_COMMAND", "pick-color.exe")


def _timeout_from_env(value: Optional[str]) -> Optional[float]:
    """Picker timeout in seconds; unset, invalid or non-positive means none."""
    if not value:
        return None
    try:
        timeout = float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid PICK_COLOR_TIMEOUT {value!r}, running the picker without a timeout")
        return None
    if not math.isfinite(timeout) or timeout <= 0:
        logger.warning(f"Ignoring PICK_COLOR_TIMEOUT {value!r}, running the picker without a timeout")
        return None
    return timeout


PICK_COLOR_TIMEOUT = _timeout_from_env(os.environ.get("PICK_COLOR_TIMEOUT"))

DEFAULT_DELAY_MS = 200
DEFAULT_IMAGE_SIZE: tuple[int, int] = (128, 128)
DEFAULT_TITLE = "Color\nPicker"
SHOW_VALUE_MODES = ("hex", "rgb", "none")

TURN_ON_PATH = "/api/services/light/turn_on"
HTTP_TIMEOUT = 10.0  # seconds

# A comma, optionally followed by one space
LIGHT_SEPARATOR = re.compile(r", ?")

# Reconnection settings
MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY_BASE = 1.0  # seconds

RGB = tuple[int, int, int]


# ============================================================================
# Exceptions
# ============================================================================

class LightPickerError(Exception):
    """Base exception for light picker operations."""
    pass


class ColorPickerError(LightPickerError):
    """Raised when the external color picker fails or returns garbage."""
    pass


class InvalidColorError(LightPickerError):
    """Raised when a color is not three 0-255 integers."""
    pass


class DispatchError(LightPickerError):
    """Raised when a single light request fails."""
    pass


class ValidationError(LightPickerError):
    """Raised when input validation fails."""
    pass


class DeckNotConnectedError(LightPickerError):
    """Raised when deck is not connected."""
    pass


# ============================================================================
# Colors
# ============================================================================

def validate_color(color: Any, name: str = "color") -> RGB:
    """
    Validate and normalize an RGB color.

    Args:
        color: Sequence of three channel values
        name: Name of the color (for error messages)

    Returns:
        Validated RGB tuple

    Raises:
        InvalidColorError: If color is invalid
    """
    if not isinstance(color, (tuple, list)) or len(color) != 3:
        raise InvalidColorError(f"{name} must be [R, G, B] with 3 values")

    for i, component in enumerate(color):
        if isinstance(component, bool) or not isinstance(component, int):
            raise InvalidColorError(f"{name} component {i} must be an integer")
        if component < 0 or component > 255:
            raise InvalidColorError(f"{name} values must be 0-255, got {component}")

    return (color[0], color[1], color[2])


def rgb_to_hex(color: Sequence[int]) -> str:
    """Format a color as ``#RRGGBB``."""
    r, g, b = validate_color(color)
    return f"#{r:02X}{g:02X}{b:02X}"


# ============================================================================
# Button settings
# ============================================================================

@dataclass(frozen=True)
class ButtonSettings:
    """
    Persisted state of one button.

    ``color_rgb`` and ``color_hex`` only ever change together through
    :meth:`with_color`.
    """

    color_rgb: Optional[RGB] = None
    color_hex: Optional[str] = None
    is_down: bool = False
    long_press: bool = False
    delay: int = DEFAULT_DELAY_MS
    show_value: str = "none"
    lights: str = field(default_factory=lambda: DEFAULT_LIGHTS)
    url: str = field(default_factory=lambda: DEFAULT_URL)
    token: str = field(default_factory=lambda: DEFAULT_TOKEN)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ButtonSettings":
        """Build settings from a host record (camelCase keys)."""
        defaults = cls()

        color = data.get("colorRgb")
        try:
            color_rgb: Optional[RGB] = validate_color(color) if color is not None else None
        except InvalidColorError as e:
            logger.warning(f"Ignoring stored color {color!r}: {e}")
            color_rgb = None

        delay = data.get("delay", defaults.delay)
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or not math.isfinite(delay) or delay < 0:
            delay = defaults.delay

        show_value = data.get("showValue", defaults.show_value)
        if show_value not in SHOW_VALUE_MODES:
            show_value = defaults.show_value

        return cls(
            color_rgb=color_rgb,
            color_hex=rgb_to_hex(color_rgb) if color_rgb else None,
            is_down=bool(data.get("isDown", False)),
            long_press=bool(data.get("longPress", False)),
            delay=int(delay),
            show_value=show_value,
            lights=str(data.get("lights") or defaults.lights),
            url=str(data.get("url") or defaults.url),
            token=str(data.get("token") or defaults.token),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a host record (camelCase keys)."""
        return {
            "colorRgb": list(self.color_rgb) if self.color_rgb else None,
            "colorHex": self.color_hex,
            "isDown": self.is_down,
            "longPress": self.long_press,
            "delay": self.delay,
            "showValue": self.show_value,
            "lights": self.lights,
            "url": self.url,
            "token": self.token,
        }

    def with_color(self, color: Sequence[int]) -> "ButtonSettings":
        rgb = validate_color(color)
        return replace(self, color_rgb=rgb, color_hex=rgb_to_hex(rgb))

    def light_ids(self) -> list[str]:
        """Target entity ids, split on a comma with an optional following space."""
        return [light for light in LIGHT_SEPARATOR.split(self.lights) if light.strip()]


def title_for(settings: ButtonSettings) -> str:
    """Key title for the button's display mode."""
    if settings.show_value == "hex" and settings.color_hex:
        return settings.color_hex
    if settings.show_value == "rgb" and settings.color_rgb:
        return ",".join(str(c) for c in settings.color_rgb)
    return DEFAULT_TITLE


# ============================================================================
# Settings store
# ============================================================================

class SettingsStore(Protocol):
    """Key/value persistence for one button's settings."""

    async def load(self) -> ButtonSettings: ...

    async def save(self, settings: ButtonSettings) -> None: ...


class MemorySettingsStore:
    """Keeps one button's settings in memory."""

    def __init__(self, settings: Optional[ButtonSettings] = None) -> None:
        self.settings = settings or ButtonSettings()

    async def load(self) -> ButtonSettings:
        return self.settings

    async def save(self, settings: ButtonSettings) -> None:
        self.settings = settings


class JsonSettingsStore:
    """
    One button's settings inside a JSON file shared by all buttons.

    The file maps button index (as a string) to a host record. Every load
    re-reads the file and every save is a read-modify-write, so concurrent
    writers to different keys can still lose updates.
    """

    def __init__(self, path: Path, key: int) -> None:
        self.path = path
        self.key = key

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load settings from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring settings file {self.path}: not an object")
            return {}
        return data

    async def load(self) -> ButtonSettings:
        record = self._read_all().get(str(self.key))
        if not isinstance(record, dict):
            return ButtonSettings()
        return ButtonSettings.from_dict(record)

    async def save(self, settings: ButtonSettings) -> None:
        data = self._read_all()
        data[str(self.key)] = settings.to_dict()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Failed to save settings for button {self.key}: {e}")

    def keys(self) -> list[int]:
        """Indices of every button recorded in the file."""
        return sorted(int(k) for k in self._read_all() if k.isdigit())


# ============================================================================
# Thumbnail
# ============================================================================

def render_thumbnail(color: Sequence[int], size: tuple[int, int] = DEFAULT_IMAGE_SIZE) -> bytes:
    """
    Render a solid-color PNG.

    Args:
        color: RGB fill color
        size: (width, height) in pixels

    Returns:
        PNG bytes

    Raises:
        InvalidColorError: If color is invalid
        ValidationError: If size is not two positive integers
    """
    rgb = validate_color(color)

    if not isinstance(size, (tuple, list)) or len(size) != 2:
        raise ValidationError("size must be (width, height)")
    for dim in size:
        if isinstance(dim, bool) or not isinstance(dim, int) or dim <= 0:
            raise ValidationError(f"size values must be positive integers, got {dim!r}")

    img = Image.new("RGB", (size[0], size[1]), rgb)
    with io.BytesIO() as output:
        img.save(output, format="PNG")
        return output.getvalue()


# ============================================================================
# Color source
# ============================================================================

def parse_picker_output(output: Union[bytes, str]) -> RGB:
    """
    Parse the picker's stdout, a single JSON line like ``[255, 0, 128]``.

    Raises:
        ColorPickerError: If output is not a valid color
    """
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")

    try:
        color = json.loads(output.strip())
    except json.JSONDecodeError as e:
        raise ColorPickerError(f"Color picker returned invalid JSON: {output.strip()!r}") from e

    try:
        return validate_color(color)
    except InvalidColorError as e:
        raise ColorPickerError(f"Color picker returned an invalid color: {e}") from e


class ColorPicker:
    """Runs the external color picker program."""

    def __init__(
        self,
        command: Union[str, Sequence[str]] = PICK_COLOR_COMMAND,
        timeout: Optional[float] = PICK_COLOR_TIMEOUT,
    ) -> None:
        self.command = [command] if isinstance(command, str) else list(command)
        self.timeout = timeout

    async def pick(self) -> RGB:
        """
        Spawn the picker and wait for the chosen color.

        Raises:
            ColorPickerError: On spawn failure, non-zero exit, timeout or bad output
        """
        logger.debug(f"Running color picker: {self.command}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ColorPickerError(f"Failed to start color picker {self.command[0]!r}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise ColorPickerError(f"Color picker timed out after {self.timeout}s")
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ColorPickerError(f"Color picker exited with code {proc.returncode}: {detail}")

        return parse_picker_output(stdout)

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()
        logger.debug(f"Stopped color picker (pid {proc.pid})")


# ============================================================================
# Light dispatcher
# ============================================================================

class LightDispatcher:
    """
    Sends colors to Home Assistant's ``light.turn_on`` service.

    Each light gets its own request. Requests run as independent tasks:
    one failing never blocks or undoes the others, and failures are only
    logged.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = HTTP_TIMEOUT) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._pending: set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def turn_on(self, light: str, color: Sequence[int], url: str, token: str) -> None:
        """
        Set one light's color.

        Raises:
            DispatchError: If the request fails or returns an error status
        """
        rgb = validate_color(color)
        try:
            response = await self._get_client().post(
                url.rstrip("/") + TURN_ON_PATH,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                json={"entity_id": light, "rgb_color": list(rgb)},
            )
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            # ValueError covers UnicodeEncodeError from non-ASCII header values
            raise DispatchError(f"Request for {light} failed: {e}") from e

        if response.status_code >= 400:
            raise DispatchError(f"Request for {light} failed: {response.status_code} {response.text}")

        logger.debug(f"Set {light} to {rgb}")

    async def _turn_on_logged(self, light: str, color: RGB, url: str, token: str) -> None:
        try:
            await self.turn_on(light, color, url, token)
        except DispatchError as e:
            logger.error(str(e))
        except Exception:
            logger.exception(f"Unexpected error sending color to {light}")

    def dispatch(self, color: Sequence[int], settings: ButtonSettings) -> list[asyncio.Task]:
        """
        Start one request per configured light and return without waiting.

        Returns:
            The started tasks (one per light)
        """
        rgb = validate_color(color)
        lights = settings.light_ids()

        if not settings.url:
            logger.warning("No Home Assistant URL configured, not sending color")
            return []
        if not lights:
            logger.warning("No lights configured, not sending color")
            return []

        logger.info(f"Sending {rgb_to_hex(rgb)} to {', '.join(lights)}")
        tasks = []
        for light in lights:
            task = asyncio.create_task(self._turn_on_logged(light, rgb, settings.url, settings.token))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Wait for requests still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


# ============================================================================
# Press classifier
# ============================================================================

class ButtonDisplay(Protocol):
    """Title and image of one key, as provided by the host."""

    async def set_title(self, title: str) -> None: ...

    async def set_image(self, image: bytes) -> None: ...


class ColorLightAction:
    """
    Color picker action bound to one key.

    A release before ``delay`` ms is a short press and picks a new color.
    Still holding when the delay runs out is a long press and re-sends the
    stored color; the following release changes nothing.

    The delay timer and the key release race on the persisted ``is_down``
    flag; the timer only acts if the flag is still set when it wakes up.
    """

    def __init__(
        self,
        store: SettingsStore,
        display: ButtonDisplay,
        picker: Optional[ColorPicker] = None,
        dispatcher: Optional[LightDispatcher] = None,
        image_size: tuple[int, int] = DEFAULT_IMAGE_SIZE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.display = display
        self.picker = picker or ColorPicker()
        self.dispatcher = dispatcher or LightDispatcher()
        self.image_size = image_size
        self._sleep = sleep

    async def refresh(self, settings: ButtonSettings) -> None:
        """Show the settings' title and color thumbnail."""
        await self.display.set_title(title_for(settings))
        if settings.color_rgb:
            await self.display.set_image(render_thumbnail(settings.color_rgb, self.image_size))

    async def on_will_appear(self) -> None:
        await self.refresh(await self.store.load())

    async def on_did_receive_settings(self, settings: ButtonSettings) -> None:
        await self.refresh(settings)

    async def on_key_down(self) -> None:
        settings = await self.store.load()
        await self.store.save(replace(settings, is_down=True))

        await self._sleep(settings.delay / 1000)

        settings = await self.store.load()
        if not settings.is_down:
            return

        settings = replace(settings, long_press=True)
        await self.store.save(settings)
        logger.debug("Long press, re-sending stored color")
        self.reapply(settings)

    async def on_key_up(self) -> None:
        settings = await self.store.load()
        released = replace(settings, is_down=False)
        await self.store.save(released)

        if settings.long_press:
            await self.store.save(replace(released, long_press=False))
            return

        await self.pick_and_apply(released)

    async def pick_and_apply(self, settings: Optional[ButtonSettings] = None) -> Optional[ButtonSettings]:
        """
        Pick a new color, send it to the lights and store it.

        Returns:
            The updated settings, or None if the picker failed
        """
        if settings is None:
            settings = await self.store.load()

        try:
            color = await self.picker.pick()
        except ColorPickerError as e:
            logger.error(f"Color pick failed: {e}")
            return None

        self.dispatcher.dispatch(color, settings)

        settings = replace(settings.with_color(color), long_press=False)
        await self.store.save(settings)
        await self.refresh(settings)
        logger.info(f"Picked {settings.color_hex}")
        return settings

    def reapply(self, settings: ButtonSettings) -> list[asyncio.Task]:
        """Send the stored color again."""
        if not settings.color_rgb:
            logger.info("No color picked yet, nothing to re-send")
            return []
        return self.dispatcher.dispatch(settings.color_rgb, settings)


# ============================================================================
# Stream Deck host
# ============================================================================

def text_color_for(bg_color: Sequence[int]) -> RGB:
    """Black on light backgrounds, white on dark ones."""
    r, g, b = bg_color
    luminance = 0.299 * r + 0.587 * g + 0.114 * b
    return (0, 0, 0) if luminance > 160 else (255, 255, 255)


class DeckKeyDisplay:
    """Draws a title over the thumbnail on one physical key."""

    def __init__(self, host: "StreamDeckHost", key: int, font_size: int = 14) -> None:
        self.host = host
        self.key = key
        self.font_size = font_size
        self.title = ""
        self.image: Optional[bytes] = None

    async def set_title(self, title: str) -> None:
        self.title = title
        self._render()

    async def set_image(self, image: bytes) -> None:
        self.image = image
        self._render()

    def _render(self) -> None:
        deck = self.host.deck
        if not deck:
            logger.debug(f"No deck connected, not drawing button {self.key}")
            return

        key_size = deck.key_image_format()["size"]
        if self.image:
            img = Image.open(io.BytesIO(self.image)).convert("RGB").resize(key_size)
        else:
            img = Image.new("RGB", key_size, (0, 0, 0))

        if self.title:
            draw = ImageDraw.Draw(img)
            font = self.host.get_font(self.font_size)
            bbox = draw.multiline_textbbox((0, 0), self.title, font=font, align="center")
            x = (key_size[0] - (bbox[2] - bbox[0])) // 2
            y = (key_size[1] - (bbox[3] - bbox[1])) // 2
            fill = text_color_for(img.getpixel((0, 0)))
            draw.multiline_text((x, y), self.title, font=font, fill=fill, align="center")

        deck.set_key_image(self.key, PILHelper.to_native_key_format(deck, img))


class StreamDeckHost:
    """
    Runs color picker actions on a physical Stream Deck.

    Handles:
    - USB connection with rate-limited reconnection
    - Routing key presses to the action of each configured key
    - Per-key settings persistence in a JSON file

    Key callbacks arrive on the deck's reader thread and are handed to the
    asyncio loop, so all action code runs on one thread.
    """

    def __init__(
        self,
        settings_file: Path = SETTINGS_FILE,
        picker: Optional[ColorPicker] = None,
        dispatcher: Optional[LightDispatcher] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.deck: Any = None
        self.settings_file = settings_file
        self.picker = picker or ColorPicker()
        self.dispatcher = dispatcher or LightDispatcher()
        self._loop = loop
        self._brightness: int = 70
        self._last_connect_attempt: float = 0
        self._connect_attempts: int = 0
        self._actions: dict[int, ColorLightAction] = {}
        self._font_cache: dict[int | str, Any] = {}

    def _validate_key(self, key: int) -> None:
        if isinstance(key, bool) or not isinstance(key, int) or key < 0:
            raise ValidationError(f"Key must be a non-negative integer, got: {key}")

        if self.deck:
            max_keys = self.deck.key_count()
            if key >= max_keys:
                raise ValidationError(f"Key {key} out of range. This deck has {max_keys} keys (0-{max_keys - 1})")

    def _check_deck_connected(self) -> None:
        if not self.deck:
            raise DeckNotConnectedError("No Stream Deck connected. Use light_connect first.")

    def store_for(self, key: int) -> JsonSettingsStore:
        return JsonSettingsStore(self.settings_file, key)

    def configured_keys(self) -> list[int]:
        return self.store_for(0).keys()

    def action_for(self, key: int) -> ColorLightAction:
        """Get (or create) the action bound to a key."""
        if key not in self._actions:
            image_size = DEFAULT_IMAGE_SIZE
            if self.deck:
                image_size = tuple(self.deck.key_image_format()["size"])
            self._actions[key] = ColorLightAction(
                self.store_for(key),
                DeckKeyDisplay(self, key),
                picker=self.picker,
                dispatcher=self.dispatcher,
                image_size=image_size,
            )
        return self._actions[key]

    def get_font(self, size: int) -> Any:
        """Get a font for key titles (cached)."""
        if size in self._font_cache:
            return self._font_cache[size]

        if "default" in self._font_cache:
            return self._font_cache["default"]

        font_paths = [
            "/System/Library/Fonts/Helvetica.ttc",  # macOS
            "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",  # Linux
            "/usr/share/fonts/TTF/DejaVuSans.ttf",  # Arch Linux
            "C:/Windows/Fonts/arial.ttf",  # Windows
        ]

        for font_path in font_paths:
            try:
                font = ImageFont.truetype(font_path, size)
                self._font_cache[size] = font
                return font
            except OSError:
                continue

        logger.warning(f"No TrueType font found, using PIL default. Font size {size} will be ignored.")
        font = ImageFont.load_default()
        self._font_cache["default"] = font
        return font

    def connect(self) -> dict[str, Any]:
        """
        Connect to the first available Stream Deck.

        Returns:
            Dict with deck info

        Raises:
            LightPickerError: If connection fails
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        now = time.time()
        if now - self._last_connect_attempt < RECONNECT_DELAY_BASE:
            time.sleep(RECONNECT_DELAY_BASE)
        self._last_connect_attempt = now

        try:
            decks = DeviceManager().enumerate()
        except Exception as e:
            logger.error(f"Failed to enumerate devices: {e}")
            raise LightPickerError(f"Failed to scan for Stream Deck devices: {e}")

        if not decks:
            raise LightPickerError("No Stream Deck found. Check USB connection and permissions.")

        try:
            self.deck = decks[0]
            self.deck.open()
            self.deck.reset()
            self.deck.set_brightness(self._brightness)
            self.deck.set_key_callback(self._key_callback)
        except Exception as e:
            self._connect_attempts += 1
            logger.error(f"Connection attempt {self._connect_attempts} failed: {e}")
            self.deck = None

            if self._connect_attempts >= MAX_RECONNECT_ATTEMPTS:
                raise LightPickerError(
                    f"Failed to connect after {MAX_RECONNECT_ATTEMPTS} attempts. "
                    "Check USB connection and permissions."
                )
            raise LightPickerError(f"Failed to open Stream Deck: {e}")

        self._connect_attempts = 0
        # Actions cached before connecting were sized for the default image
        self._actions.clear()
        logger.info(f"Connected to {self.deck.deck_type()} (serial: {self.deck.get_serial_number()})")
        return self.get_deck_info()

    def _key_callback(self, deck: Any, key: int, state: bool) -> Optional[Any]:
        """
        Handle physical key presses (called on the deck's reader thread).

        Args:
            deck: The deck that triggered the callback
            key: Button index
            state: True for press, False for release

        Returns:
            Future of the scheduled handler, or None without an event loop
        """
        if self._loop is None:
            logger.warning(f"Key {key} event before the event loop was attached, ignoring")
            return None

        # Key lookup and action creation happen on the loop thread
        return asyncio.run_coroutine_threadsafe(self._handle_key(key, state), self._loop)

    async def _handle_key(self, key: int, state: bool) -> None:
        try:
            if key not in self.configured_keys():
                return
            action = self.action_for(key)
            if state:
                await action.on_key_down()
            else:
                await action.on_key_up()
        except Exception:
            logger.exception(f"Handler failed for button {key}")

    async def show_all(self) -> int:
        """Draw every configured key. Returns the number of keys drawn."""
        keys = self.configured_keys()
        for key in keys:
            await self.action_for(key).on_will_appear()
        return len(keys)

    async def configure_button(self, key: int, **fields: Any) -> ButtonSettings:
        """
        Update a key's settings.

        Args:
            key: Button index
            fields: Any of url, token, lights, delay, show_value

        Returns:
            The saved settings

        Raises:
            ValidationError: If a field is unknown or invalid
        """
        self._validate_key(key)

        allowed = {"url", "token", "lights", "delay", "show_value"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(f"Unknown button settings: {', '.join(sorted(unknown))}")

        if "delay" in fields:
            delay = fields["delay"]
            if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
                raise ValidationError(f"delay must be a non-negative integer (ms), got {delay!r}")
        if "show_value" in fields and fields["show_value"] not in SHOW_VALUE_MODES:
            raise ValidationError(f"show_value must be one of {', '.join(SHOW_VALUE_MODES)}")
        for name in ("url", "token", "lights"):
            if name in fields and not isinstance(fields[name], str):
                raise ValidationError(f"{name} must be a string")

        store = self.store_for(key)
        settings = replace(await store.load(), **fields)
        await store.save(settings)
        logger.info(f"Configured button {key}")

        await self.action_for(key).on_did_receive_settings(settings)
        return settings

    async def get_button(self, key: int) -> dict[str, Any]:
        """Get a key's settings record, with the token masked."""
        self._validate_key(key)
        record = (await self.store_for(key).load()).to_dict()
        if record["token"]:
            record["token"] = "***"
        return {"key": key, **record}

    def get_deck_info(self) -> dict[str, Any]:
        if not self.deck:
            return {"connected": False, "configured_keys": self.configured_keys()}

        try:
            layout = self.deck.key_layout()  # Returns (rows, cols)
            return {
                "connected": True,
                "id": self.deck.id(),
                "type": self.deck.deck_type(),
                "serial": self.deck.get_serial_number(),
                "firmware": self.deck.get_firmware_version(),
                "key_count": self.deck.key_count(),
                "columns": layout[1],
                "rows": layout[0],
                "brightness": self._brightness,
                "configured_keys": self.configured_keys(),
            }
        except Exception as e:
            logger.error(f"Failed to get deck info: {e}")
            self.deck = None
            return {"connected": False, "error": str(e)}

    def set_brightness(self, percent: int) -> bool:
        """Set deck brightness (0-100)."""
        self._check_deck_connected()

        if isinstance(percent, bool) or not isinstance(percent, (int, float)):
            raise ValidationError("Brightness must be a number")

        percent = max(0, min(100, int(percent)))

        try:
            self.deck.set_brightness(percent)
        except Exception as e:
            logger.error(f"Failed to set brightness: {e}")
            raise LightPickerError(f"Failed to set brightness: {e}")

        self._brightness = percent
        logger.debug(f"Set brightness to {percent}%")
        return True

    def disconnect(self) -> None:
        """Clean up deck connection."""
        if self.deck:
            try:
                self.deck.reset()
                self.deck.close()
                logger.info("Disconnected from Stream Deck")
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self.deck = None


# ============================================================================
# MCP Server
# ============================================================================

host = StreamDeckHost()
server = Server("streamdeck-light-picker")

KEY_SCHEMA = {
    "type": "object",
    "properties": {
        "key": {
            "type": "integer",
            "description": "Button index (0-based, left-to-right, top-to-bottom)",
        },
    },
    "required": ["key"],
}


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available light picker tools."""
    return [
        Tool(
            name="light_connect",
            description="Connect to a Stream Deck and draw every configured color picker key.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="light_info",
            description="Get info about the connected Stream Deck and which keys are color pickers",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="light_configure_button",
            description="Turn a key into a color picker or change its settings.",
            inputSchema={
                "type": "object",
                "properties": {
                    "key": {
                        "type": "integer",
                        "description": "Button index (0-based)",
                    },
                    "url": {
                        "type": "string",
                        "description": "Home Assistant base URL, e.g. http://homeassistant.local:8123",
                    },
                    "token": {
                        "type": "string",
                        "description": "Home Assistant long-lived access token",
                    },
                    "lights": {
                        "type": "string",
                        "description": "Comma separated light entity ids",
                    },
                    "delay": {
                        "type": "integer",
                        "description": "Long press threshold in milliseconds (default: 200)",
                    },
                    "show_value": {
                        "type": "string",
                        "enum": list(SHOW_VALUE_MODES),
                        "description": "Title shown on the key",
                    },
                },
                "required": ["key"],
            },
        ),
        Tool(
            name="light_get_button",
            description="Get a color picker key's settings",
            inputSchema=KEY_SCHEMA,
        ),
        Tool(
            name="light_pick_color",
            description="Open the color picker for a key and send the chosen color to its lights (same as a short press)",
            inputSchema=KEY_SCHEMA,
        ),
        Tool(
            name="light_reapply",
            description="Send a key's stored color to its lights again (same as a long press)",
            inputSchema=KEY_SCHEMA,
        ),
        Tool(
            name="light_preview",
            description="Get the color thumbnail of a key as an image",
            inputSchema=KEY_SCHEMA,
        ),
        Tool(
            name="light_set_brightness",
            description="Set the Stream Deck screen brightness",
            inputSchema={
                "type": "object",
                "properties": {
                    "percent": {
                        "type": "integer",
                        "description": "Brightness level 0-100",
                    },
                },
                "required": ["percent"],
            },
        ),
        Tool(
            name="light_disconnect",
            description="Disconnect from Stream Deck and reset it",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent | ImageContent]:
    """Handle tool calls with proper error handling."""

    try:
        if name == "light_connect":
            info = host.connect()
            count = await host.show_all()
            return [TextContent(
                type="text",
                text=f"✅ Connected to {info['type']}\n"
                     f"   Serial: {info['serial']}\n"
                     f"   Keys: {info['key_count']} ({info['columns']}x{info['rows']})\n"
                     f"   Color pickers: {count}"
            )]

        elif name == "light_info":
            return [TextContent(type="text", text=json.dumps(host.get_deck_info(), indent=2))]

        elif name == "light_configure_button":
            key = arguments["key"]
            fields = {k: v for k, v in arguments.items() if k != "key"}
            await host.configure_button(key, **fields)
            return [TextContent(type="text", text=f"✅ Button {key} configured")]

        elif name == "light_get_button":
            config = await host.get_button(arguments["key"])
            return [TextContent(type="text", text=json.dumps(config, indent=2))]

        elif name == "light_pick_color":
            key = arguments["key"]
            host._validate_key(key)
            settings = await host.action_for(key).pick_and_apply()
            if settings is None:
                return [TextContent(type="text", text=f"❌ Color pick failed for button {key}")]
            return [TextContent(type="text", text=f"✅ Button {key} set to {settings.color_hex}")]

        elif name == "light_reapply":
            key = arguments["key"]
            host._validate_key(key)
            action = host.action_for(key)
            settings = await action.store.load()
            if not action.reapply(settings):
                return [TextContent(type="text", text=f"⚠️ Button {key} has nothing to send")]
            return [TextContent(type="text", text=f"✅ Re-sent {settings.color_hex} from button {key}")]

        elif name == "light_preview":
            key = arguments["key"]
            host._validate_key(key)
            settings = await host.store_for(key).load()
            if not settings.color_rgb:
                return [TextContent(type="text", text=f"⚠️ Button {key} has no color yet")]
            png = render_thumbnail(settings.color_rgb)
            return [
                ImageContent(type="image", data=base64_png(png), mimeType="image/png"),
                TextContent(type="text", text=title_for(settings)),
            ]

        elif name == "light_set_brightness":
            percent = arguments["percent"]
            host.set_brightness(percent)
            return [TextContent(type="text", text=f"✅ Brightness set to {percent}%")]

        elif name == "light_disconnect":
            host.disconnect()
            return [TextContent(type="text", text="✅ Disconnected from Stream Deck")]

        return [TextContent(type="text", text=f"❌ Unknown tool: {name}")]

    except (ValidationError, InvalidColorError) as e:
        return [TextContent(type="text", text=f"⚠️ {e}")]

    except LightPickerError as e:
        return [TextContent(type="text", text=f"❌ {e}")]

    except Exception as e:
        logger.exception(f"Unexpected error in {name}")
        return [TextContent(type="text", text=f"❌ Unexpected error: {e}")]


def base64_png(png: bytes) -> str:
    return base64.b64encode(png).decode("ascii")


async def main() -> None:
    """Run the MCP server."""
    logger.info("Starting Stream Deck light picker")
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        host.disconnect()
        await host.dispatcher.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
