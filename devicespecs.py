from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceSpec:
    name: str
    width: int
    height: int
    scale: int


# Native portrait pixel size and point scale, keyed by iPhone ProductType.
IPHONE_SPECS: dict[str, DeviceSpec] = {
    "iPhone16,1": DeviceSpec("iPhone 15 Pro", 1179, 2556, 3),
    "iPhone16,2": DeviceSpec("iPhone 15 Pro Max", 1290, 2796, 3),
    "iPhone15,4": DeviceSpec("iPhone 15", 1179, 2556, 3),
    "iPhone15,5": DeviceSpec("iPhone 15 Plus", 1290, 2796, 3),
    "iPhone15,2": DeviceSpec("iPhone 14 Pro", 1179, 2556, 3),
    "iPhone15,3": DeviceSpec("iPhone 14 Pro Max", 1290, 2796, 3),
    "iPhone14,7": DeviceSpec("iPhone 14", 1170, 2532, 3),
    "iPhone14,8": DeviceSpec("iPhone 14 Plus", 1284, 2778, 3),
    "iPhone14,2": DeviceSpec("iPhone 13 Pro", 1170, 2532, 3),
    "iPhone14,3": DeviceSpec("iPhone 13 Pro Max", 1284, 2778, 3),
    "iPhone14,5": DeviceSpec("iPhone 13", 1170, 2532, 3),
    "iPhone14,6": DeviceSpec("iPhone SE (3rd generation)", 750, 1334, 2),
    "iPhone13,2": DeviceSpec("iPhone 12", 1170, 2532, 3),
    "iPhone13,3": DeviceSpec("iPhone 12 Pro", 1170, 2532, 3),
    "iPhone13,4": DeviceSpec("iPhone 12 Pro Max", 1284, 2778, 3),
    "iPhone12,1": DeviceSpec("iPhone 11", 828, 1792, 2),
    "iPhone12,3": DeviceSpec("iPhone 11 Pro", 1125, 2436, 3),
    "iPhone12,5": DeviceSpec("iPhone 11 Pro Max", 1242, 2688, 3),
    "iPhone12,8": DeviceSpec("iPhone SE (2nd generation)", 750, 1334, 2),
}


def lookup_spec(model_code: str | None) -> DeviceSpec | None:
    if not model_code:
        return None
    return IPHONE_SPECS.get(model_code.strip())


def friendly_model_name(model_code: str | None, device_name: str | None = None) -> str:
    spec = lookup_spec(model_code)
    if spec:
        return spec.name
    return device_name or model_code or "iPhone"
