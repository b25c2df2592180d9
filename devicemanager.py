import io
import json
import logging
import re
import subprocess
import tempfile
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from PIL import Image as PILImage
from PIL import UnidentifiedImageError
from ppadb.client import Client as AdbClient

from devicespecs import friendly_model_name
from errors import (
    DeviceBridgeError,
    MissingRequiredSignal,
    NoDeviceConnected,
    ParseFailure,
    ToolUnavailable,
    TransientIOFailure,
)
from resolution import ANDROID, IOS, DisplaySignals, ResolutionRecord, ResolutionResolver

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 15.0
DEFAULT_JPEG_QUALITY = 85
SCREENSHOT_FORMAT = "jpeg"

TUNNEL_INSTRUCTIONS = (
    "iOS tunnel not configured. Start it with: sudo pymobiledevice3 remote start-tunnel, "
    "then set ios.rsd_address and ios.rsd_port in config.yaml "
    "(or IOS_RSD_ADDRESS / IOS_RSD_PORT) and restart the server."
)
TUNNEL_NOT_RUNNING = "Tunnel not running. Start it with: sudo pymobiledevice3 remote start-tunnel"


@dataclass(frozen=True)
class Device:
    platform: str
    identifier: str
    model_code: str | None = None
    display_name: str | None = None
    manufacturer: str | None = None
    os_version: str | None = None


@dataclass(frozen=True)
class TunnelConfig:
    """RSD parameters printed by `pymobiledevice3 remote start-tunnel`."""

    address: str | None = None
    port: str | int | None = None

    @property
    def configured(self) -> bool:
        try:
            self.require()
        except MissingRequiredSignal:
            return False
        return True

    def require(self) -> tuple[str, int]:
        address = (self.address or "").strip()
        if not address or self.port in (None, ""):
            raise MissingRequiredSignal(TUNNEL_INSTRUCTIONS)
        try:
            port = int(str(self.port).strip())
        except ValueError:
            raise MissingRequiredSignal(f"Invalid RSD port {self.port!r}. {TUNNEL_INSTRUCTIONS}") from None
        if not 0 < port < 65536:
            raise MissingRequiredSignal(f"RSD port {port} is out of range. {TUNNEL_INSTRUCTIONS}")
        return address, port


def run_tool(command: list[str], timeout: float, text: bool = True) -> subprocess.CompletedProcess:
    """Run an external device-bridge command, mapping failures to bridge errors."""
    try:
        return subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=text,
            check=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ToolUnavailable(
            f"{command[0]} is not installed or not in PATH. Please install it and ensure it is in your PATH."
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise TransientIOFailure(f"'{' '.join(command)}' timed out after {timeout:g}s") from exc
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr if isinstance(exc.stderr, str) else (exc.stderr or b"").decode("utf-8", "replace")
        raise TransientIOFailure(
            f"'{' '.join(command)}' exited with code {exc.returncode}: {stderr.strip()}"
        ) from exc


_SIZE_RE = re.compile(r"(Physical|Override) size:\s*(\d+)x(\d+)")
_DENSITY_RE = re.compile(r"(Physical|Override) density:\s*(\d+)")


def parse_wm_size(output: str) -> tuple[int, int]:
    """Parse `wm size`, preferring the override size when one is set."""
    sizes = {kind: (int(w), int(h)) for kind, w, h in _SIZE_RE.findall(output)}
    size = sizes.get("Override") or sizes.get("Physical")
    if size is None:
        match = re.search(r"(\d+)x(\d+)", output)
        if match:
            size = (int(match.group(1)), int(match.group(2)))
    if size is None:
        raise ParseFailure(f"Could not parse screen size from {output.strip()!r}")
    if size[0] <= 0 or size[1] <= 0:
        raise ParseFailure(f"Invalid screen size {size[0]}x{size[1]}")
    return size


def parse_wm_density(output: str) -> int | None:
    """Parse `wm density`. Returns None when the output carries no density at all."""
    densities = {kind: int(value) for kind, value in _DENSITY_RE.findall(output)}
    density = densities.get("Override") or densities.get("Physical")
    if density is None:
        match = re.search(r"density:\s*(\d+)", output)
        if match:
            density = int(match.group(1))
        elif "density" in output:
            raise ParseFailure(f"Could not parse screen density from {output.strip()!r}")
    return density


def parse_rotation(output: str) -> int | None:
    """Quarter-turn count from `dumpsys window`, or None when absent."""
    match = re.search(r"ROTATION_(\d+)", output)
    if match:
        degrees = int(match.group(1))
        if degrees % 90:
            return None
        return (degrees // 90) % 4
    match = re.search(r"mCurrentRotation=(\d)\b", output)
    if match:
        return int(match.group(1))
    return None


class TimeoutAdbClient(AdbClient):
    """ppadb client whose connections, including the ones pull() opens, time out."""

    def __init__(self, host: str = "127.0.0.1", port: int = 5037, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        super().__init__(host=host, port=port)
        self.timeout = timeout

    def create_connection(self, timeout=None):
        return super().create_connection(timeout=self.timeout if timeout is None else timeout)


class AndroidBridge:
    """Shell access to one Android device through the adb server."""

    def __init__(self, device, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.device = device
        self.timeout = timeout

    @property
    def serial(self) -> str:
        return self.device.serial

    def shell(self, command: str) -> str:
        try:
            return self.device.shell(command, timeout=self.timeout)
        except (RuntimeError, OSError) as exc:
            raise TransientIOFailure(f"adb shell '{command}' failed on {self.serial}: {exc}") from exc

    def getprop(self, name: str) -> str | None:
        value = self.shell(f"getprop {name}").strip()
        return value or None

    def display_signals(self) -> DisplaySignals:
        width, height = parse_wm_size(self.shell("wm size"))
        density = parse_wm_density(self.shell("wm density"))

        rotation = None
        try:
            rotation = parse_rotation(self.shell("dumpsys window | grep mCurrentRotation"))
        except TransientIOFailure as exc:
            logger.debug("Rotation query failed, assuming portrait: %s", exc)

        return DisplaySignals(width=width, height=height, density=density, rotation=rotation)

    def capture(self, local_dir: Path) -> bytes:
        """Capture on the device, pull into local_dir and remove the device copy."""
        device_path = f"/sdcard/screenshot_{uuid.uuid4().hex}.png"
        host_path = local_dir / "screenshot.png"
        try:
            self.shell(f"screencap -p {device_path}")
            try:
                self.device.pull(device_path, str(host_path))
            except (RuntimeError, OSError) as exc:
                raise TransientIOFailure(f"Failed to pull {device_path} from {self.serial}: {exc}") from exc
            return read_capture(host_path)
        finally:
            self._remove_remote(device_path)

    def _remove_remote(self, device_path: str) -> None:
        try:
            self.device.shell(f"rm -f {device_path}", timeout=self.timeout)
        except (RuntimeError, OSError) as exc:
            logger.warning("Could not remove %s from %s: %s", device_path, self.serial, exc)


class IosBridge:
    """Wraps the pymobiledevice3 command line tool."""

    def __init__(
        self,
        tunnel: TunnelConfig | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        executable: str = "pymobiledevice3",
    ) -> None:
        self.tunnel = tunnel or TunnelConfig()
        self.timeout = timeout
        self.executable = executable

    def list_usb_devices(self) -> list[dict]:
        result = run_tool([self.executable, "usbmux", "list"], self.timeout)
        output = (result.stdout or "").strip()
        if not output:
            return []
        try:
            entries = json.loads(output)
        except ValueError as exc:
            raise ParseFailure(f"Unexpected usbmux output: {output[:200]!r}") from exc
        if not isinstance(entries, list):
            raise ParseFailure(f"Unexpected usbmux output: {output[:200]!r}")
        return [entry for entry in entries if isinstance(entry, dict) and entry.get("ConnectionType") == "USB"]

    def capture(self, local_dir: Path) -> bytes:
        address, port = self.tunnel.require()
        host_path = local_dir / "screenshot.png"
        command = [self.executable, "developer", "dvt", "screenshot", str(host_path), "--rsd", address, str(port)]
        try:
            run_tool(command, self.timeout)
        except TransientIOFailure as exc:
            if "tunneld" in str(exc) or "RemoteXPC" in str(exc):
                raise TransientIOFailure(TUNNEL_NOT_RUNNING) from exc
            raise
        return read_capture(host_path)


def read_capture(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise TransientIOFailure(f"Screenshot file was not written: {exc}") from exc
    if not data:
        raise ParseFailure("Screenshot file is empty")
    return data


def compress_screenshot(image_bytes: bytes, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Re-encode a capture as JPEG to shrink the transfer. Dimensions are kept."""
    try:
        with PILImage.open(io.BytesIO(image_bytes)) as img:
            output = io.BytesIO()
            img.convert("RGB").save(output, "JPEG", quality=quality, optimize=True)
    except (UnidentifiedImageError, OSError) as exc:
        raise ParseFailure(f"Could not decode screenshot: {exc}") from exc
    return output.getvalue()


class DeviceProber:
    """Finds the connected device. Android is tried first; the first hit wins."""

    def __init__(
        self,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        adb_client_factory: Callable[[], AdbClient] | None = None,
        ios_bridge: IosBridge | None = None,
    ) -> None:
        self.timeout = timeout
        self.adb_client_factory = adb_client_factory or partial(TimeoutAdbClient, timeout=timeout)
        self.ios_bridge = ios_bridge or IosBridge(timeout=timeout)

    def probe(self) -> Device | None:
        for finder in (self.find_android_device, self.find_ios_device):
            device = finder()
            if device:
                logger.info("Detected %s device %s", device.platform, device.identifier)
                return device
        logger.info("No device detected")
        return None

    def check_adb_installed(self) -> bool:
        """Check that adb is on PATH and its server is up."""
        try:
            run_tool(["adb", "start-server"], self.timeout)
            return True
        except DeviceBridgeError as exc:
            logger.debug("adb unavailable: %s", exc)
            return False

    def find_android_device(self) -> Device | None:
        if not self.check_adb_installed():
            return None
        try:
            devices = self.adb_client_factory().devices(state="device")
        except (RuntimeError, OSError) as exc:
            logger.debug("Could not list adb devices: %s", exc)
            return None
        if not devices:
            return None
        if len(devices) > 1:
            logger.info(
                "Multiple Android devices connected: %s. Using %s",
                [d.serial for d in devices],
                devices[0].serial,
            )

        bridge = AndroidBridge(devices[0], self.timeout)
        manufacturer = model = None
        try:
            manufacturer = bridge.getprop("ro.product.manufacturer")
            model = bridge.getprop("ro.product.model")
        except TransientIOFailure as exc:
            logger.warning("Could not read device properties: %s", exc)

        return Device(
            platform=ANDROID,
            identifier=bridge.serial,
            model_code=model,
            display_name=model,
            manufacturer=manufacturer,
        )

    def find_ios_device(self) -> Device | None:
        try:
            entries = self.ios_bridge.list_usb_devices()
        except DeviceBridgeError as exc:
            logger.debug("No iOS device: %s", exc)
            return None

        for entry in entries:
            identifier = entry.get("Identifier") or entry.get("UniqueDeviceID")
            if not identifier:
                continue
            return Device(
                platform=IOS,
                identifier=str(identifier),
                model_code=entry.get("ProductType"),
                display_name=entry.get("DeviceName"),
                manufacturer="Apple",
                os_version=entry.get("ProductVersion"),
            )
        return None


class DeviceSession:
    """Holds the currently connected device for the lifetime of the server."""

    def __init__(self, prober: DeviceProber) -> None:
        self.prober = prober
        self._device: Device | None = None

    @property
    def device(self) -> Device | None:
        return self._device

    def refresh(self) -> Device | None:
        self._device = self.prober.probe()
        return self._device

    def invalidate(self) -> None:
        self._device = None

    def current(self) -> Device:
        if self._device is None:
            self.refresh()
        if self._device is None:
            raise NoDeviceConnected()
        return self._device


class ScreenshotAcquirer:
    def __init__(
        self,
        ios_bridge: IosBridge,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        adb_client_factory: Callable[[], AdbClient] | None = None,
        temp_dir: str | None = None,
    ) -> None:
        self.ios_bridge = ios_bridge
        self.timeout = timeout
        self.adb_client_factory = adb_client_factory or partial(TimeoutAdbClient, timeout=timeout)
        self.temp_dir = temp_dir

    def android_bridge(self, device: Device) -> AndroidBridge:
        try:
            adb_device = self.adb_client_factory().device(device.identifier)
        except (RuntimeError, OSError) as exc:
            raise TransientIOFailure(f"Could not reach the adb server: {exc}") from exc
        if adb_device is None:
            raise NoDeviceConnected(f"Device {device.identifier} is no longer connected")
        return AndroidBridge(adb_device, self.timeout)

    def capture(self, device: Device) -> bytes:
        """Return the raw PNG bytes of the device's current screen."""
        with tempfile.TemporaryDirectory(prefix="mobile-screenshot-", dir=self.temp_dir) as tmp:
            if device.platform == ANDROID:
                return self.android_bridge(device).capture(Path(tmp))
            return self.ios_bridge.capture(Path(tmp))


class DeviceManager:
    def __init__(
        self,
        tunnel: TunnelConfig | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        adb_client_factory: Callable[[], AdbClient] | None = None,
        temp_dir: str | None = None,
    ) -> None:
        """
        Initialize the Device Manager. No device is contacted until the first request.

        Args:
            tunnel: RSD parameters for iOS 17+ devices
            command_timeout: Seconds allowed for each external tool call
            jpeg_quality: Quality used when recompressing screenshots
            adb_client_factory: Builds the ppadb client talking to the adb server
            temp_dir: Parent directory for temporary capture files
        """
        self.tunnel = tunnel or TunnelConfig()
        self.jpeg_quality = jpeg_quality
        self.ios_bridge = IosBridge(self.tunnel, command_timeout)
        adb_client_factory = adb_client_factory or partial(TimeoutAdbClient, timeout=command_timeout)
        self.session = DeviceSession(DeviceProber(command_timeout, adb_client_factory, self.ios_bridge))
        self.acquirer = ScreenshotAcquirer(self.ios_bridge, command_timeout, adb_client_factory, temp_dir)
        self.resolver = ResolutionResolver()

    @contextmanager
    def _invalidate_on_error(self) -> Iterator[None]:
        try:
            yield
        except (NoDeviceConnected, TransientIOFailure):
            self.session.invalidate()
            raise

    def get_device_info(self) -> dict:
        device = self.session.refresh()
        if device is None:
            return {"connected": False, "message": "No device connected"}

        if device.platform == IOS:
            model = friendly_model_name(device.model_code, device.display_name)
        else:
            model = device.display_name or "Unknown"
        return {
            "connected": True,
            "deviceType": device.platform,
            "deviceId": device.identifier,
            "manufacturer": device.manufacturer or "Unknown",
            "model": model,
        }

    def get_resolution(self) -> ResolutionRecord:
        device = self.session.current()
        with self._invalidate_on_error():
            if device.platform == ANDROID:
                signals = self.acquirer.android_bridge(device).display_signals()
                return self.resolver.resolve(device, signals)
            return self.resolver.resolve(device, sample_provider=lambda: self.acquirer.capture(device))

    def take_screenshot(self) -> tuple[bytes, ResolutionRecord | None]:
        """
        Capture the screen and resolve its metrics.

        Returns:
            tuple: JPEG bytes and the resolution record, or None when the
                   record could not be computed
        """
        device = self.session.current()
        with self._invalidate_on_error():
            raw = self.acquirer.capture(device)
        image = compress_screenshot(raw, self.jpeg_quality)

        try:
            if device.platform == ANDROID:
                signals = self.acquirer.android_bridge(device).display_signals()
                record = self.resolver.resolve(device, signals)
            else:
                # The capture doubles as the sample for unknown models.
                record = self.resolver.resolve(device, sample_provider=lambda: raw)
        except DeviceBridgeError as exc:
            logger.warning("Screenshot taken but resolution unavailable: %s", exc)
            record = None
        return image, record
