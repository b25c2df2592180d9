import argparse
import base64
import logging
import os
import sys
from collections.abc import Callable

import uvicorn
import yaml
from mcp.server.fastmcp import FastMCP, Image
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from devicemanager import (
    DEFAULT_COMMAND_TIMEOUT,
    DEFAULT_JPEG_QUALITY,
    SCREENSHOT_FORMAT,
    DeviceManager,
    TunnelConfig,
)
from errors import DeviceBridgeError, NoDeviceConnected
from frames import materialize_frame
from resolution import IOS, ResolutionRecord

CONFIG_FILE = "config.yaml"
CONFIG_FILE_EXAMPLE = "config.yaml.example"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000

logger = logging.getLogger(__name__)


def load_config(path: str = CONFIG_FILE) -> dict:
    """Load config.yaml. A missing file means defaults; a broken one aborts start-up."""
    if not os.path.exists(path):
        print(f"Config file {path} not found, using defaults", file=sys.stderr)
        return {}
    try:
        with open(path) as f:
            config = yaml.safe_load(f.read()) or {}
        if not isinstance(config, dict):
            raise ValueError("top level must be a mapping")
    except (OSError, yaml.YAMLError, ValueError) as e:
        print(f"Error loading config file {path}: {e}", file=sys.stderr)
        print(
            f"Please check the format of your config file or recreate it from {CONFIG_FILE_EXAMPLE}", file=sys.stderr)
        sys.exit(1)
    print(f"Loaded config from {path}", file=sys.stderr)
    return config


def config_section(config: dict, name: str) -> dict:
    section = config.get(name)
    return section if isinstance(section, dict) else {}


def build_device_manager(config: dict) -> DeviceManager:
    ios_config = config_section(config, "ios")
    device_config = config_section(config, "device")
    screenshot_config = config_section(config, "screenshot")

    # Environment variables win over the file for the tunnel parameters.
    tunnel = TunnelConfig(
        address=os.getenv("IOS_RSD_ADDRESS") or ios_config.get("rsd_address"),
        port=os.getenv("IOS_RSD_PORT") or ios_config.get("rsd_port"),
    )
    quality = int(screenshot_config.get("jpeg_quality", DEFAULT_JPEG_QUALITY))
    return DeviceManager(
        tunnel=tunnel,
        command_timeout=float(device_config.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)),
        jpeg_quality=min(max(quality, 1), 95),
    )


config = load_config()
mcp = FastMCP("mobile-screenshot")
device_manager = build_device_manager(config)


def resolution_payload(record: ResolutionRecord) -> dict:
    return {"success": True, **record.to_dict()}


def screenshot_payload(image: bytes, record: ResolutionRecord | None) -> dict:
    return {
        "success": True,
        "image": base64.b64encode(image).decode("ascii"),
        "format": SCREENSHOT_FORMAT,
        "resolution": resolution_payload(record) if record else None,
    }


def respond(operation: Callable[[], dict]) -> JSONResponse:
    """Run a device operation and map bridge errors to `{error, message}` responses."""
    try:
        return JSONResponse(operation())
    except NoDeviceConnected as exc:
        logger.info("%s", exc)
        return JSONResponse({"error": exc.code, "message": str(exc)}, status_code=exc.status_code)
    except DeviceBridgeError as exc:
        logger.error("%s: %s", exc.code, exc)
        return JSONResponse({"error": exc.code, "message": str(exc)}, status_code=exc.status_code)
    except Exception as exc:
        logger.exception("Unexpected error handling request")
        return JSONResponse({"error": "internal_error", "message": str(exc)}, status_code=500)


@mcp.custom_route("/health", methods=["GET"])
async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "message": "Server is running"})


@mcp.custom_route("/device", methods=["GET"])
async def device_route(request: Request) -> JSONResponse:
    return respond(lambda: device_manager.get_device_info())


@mcp.custom_route("/resolution", methods=["GET"])
async def resolution_route(request: Request) -> JSONResponse:
    return respond(lambda: resolution_payload(device_manager.get_resolution()))


@mcp.custom_route("/screenshot", methods=["GET"])
async def screenshot_route(request: Request) -> JSONResponse:
    return respond(lambda: screenshot_payload(*device_manager.take_screenshot()))


@mcp.tool()
def get_device() -> dict:
    """
    Detect the connected Android or iOS device
    Returns:
        dict: connected flag plus device type, id, manufacturer and model
    """
    return device_manager.get_device_info()


@mcp.tool()
def get_resolution() -> dict:
    """
    Get the current screen resolution of the connected device.
    Returns physical pixels, logical points, density, scale and rotation.
    The `estimated` flag is set when the scale was inferred from a screenshot.

    Returns:
        dict: The resolution record
    """
    return resolution_payload(device_manager.get_resolution())


@mcp.tool()
def get_screenshot() -> Image:
    """Takes a screenshot of the device and returns it.
    Returns:
        Image: the screenshot
    """
    image, _ = device_manager.take_screenshot()
    return Image(data=image, format=SCREENSHOT_FORMAT)


@mcp.tool()
def create_screenshot_frame(use_logical_size: bool = True) -> dict:
    """
    Capture the screen and describe the canvas frame it should be placed in.
    Args:
        use_logical_size (bool): Size the frame in points instead of pixels
    Returns:
        dict: Frame description (name, position, size and the stretched image fill)
    """
    image, record = device_manager.take_screenshot()
    if record is None:
        record = device_manager.get_resolution()
    return materialize_frame(image, record, use_logical_size=use_logical_size).to_dict()


def create_app():
    """HTTP app serving the JSON routes and the MCP endpoint, open to the plugin's origin."""
    app = mcp.streamable_http_app()
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET"], allow_headers=["*"])
    return app


def announce_device() -> None:
    print("Detecting connected devices...", file=sys.stderr)
    info = device_manager.get_device_info()
    if not info["connected"]:
        print("No device detected", file=sys.stderr)
        print("   Connect an Android device (via ADB) or iOS device (via USB)", file=sys.stderr)
        return

    device = device_manager.session.device
    if info["deviceType"] == IOS and device is not None and device.os_version:
        platform = f"iOS {device.os_version}"
    else:
        platform = info["deviceType"]
    print(f"Detected: {info['manufacturer']} {info['model']} ({platform})", file=sys.stderr)
    print(f"  Device ID: {info['deviceId']}", file=sys.stderr)
    if info["deviceType"] == IOS:
        tunnel = device_manager.tunnel
        if tunnel.configured:
            print(f"iOS tunnel configured: {tunnel.address}:{tunnel.port}", file=sys.stderr)
        else:
            print("iOS tunnel configuration required for screenshots.", file=sys.stderr)
            print("   Start tunnel in another terminal: sudo pymobiledevice3 remote start-tunnel", file=sys.stderr)
            print("   Then set ios.rsd_address / ios.rsd_port in config.yaml and restart.", file=sys.stderr)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    server_config = config_section(config, "server")
    parser = argparse.ArgumentParser(description="Mobile device screenshot server")
    parser.add_argument("--transport", choices=["http", "stdio"], default="http")
    parser.add_argument("--host", default=server_config.get("host", DEFAULT_HOST))
    parser.add_argument("--port", type=int, default=int(server_config.get("port", DEFAULT_PORT)))
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    logging.basicConfig(
        level=str(config_section(config, "logging").get("level", "INFO")).upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    announce_device()
    if args.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        print(f"Mobile Screenshot Server running on http://{args.host}:{args.port}", file=sys.stderr)
        print(f"Test connection: http://{args.host}:{args.port}/health", file=sys.stderr)
        uvicorn.run(create_app(), host=args.host, port=args.port)
