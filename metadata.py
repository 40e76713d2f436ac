"""
metadata.py - Capture time, GPS position and content hash of photo files
"""

import hashlib
import io
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from dateutil import tz
from loguru import logger
from PIL import ExifTags, Image

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".heic", ".tif", ".tiff")

DATETIME_ORIGINAL = 0x9003
OFFSET_TIME_ORIGINAL = 0x9011
DATETIME = 0x0132
GPS_LATITUDE_REF = 1
GPS_LATITUDE = 2
GPS_LONGITUDE_REF = 3
GPS_LONGITUDE = 4


def compute_file_hash(data: bytes) -> str:
    """SHA-256 of the raw file content"""
    return hashlib.sha256(data).hexdigest()


def _to_degrees(value) -> float:
    """Convert EXIF (degrees, minutes, seconds) rationals to decimal degrees"""
    degrees, minutes, seconds = (float(v) for v in value)
    return degrees + minutes / 60.0 + seconds / 3600.0


def parse_gps(gps_ifd: dict) -> Optional[dict]:
    """Decimal lat/lon from a GPS IFD, or None if incomplete"""
    try:
        lat = _to_degrees(gps_ifd[GPS_LATITUDE])
        lon = _to_degrees(gps_ifd[GPS_LONGITUDE])
    except (KeyError, TypeError, ValueError, ZeroDivisionError):
        return None

    if str(gps_ifd.get(GPS_LATITUDE_REF, "N")).upper().startswith("S"):
        lat = -lat
    if str(gps_ifd.get(GPS_LONGITUDE_REF, "E")).upper().startswith("W"):
        lon = -lon

    # 0,0 is what some phones write when GPS was off
    if lat == 0 and lon == 0:
        return None
    return {"lat": round(lat, 6), "lon": round(lon, 6)}


def parse_exif_time(value: str, offset: Optional[str], timezone_str: str) -> Optional[datetime]:
    """EXIF 'YYYY:MM:DD HH:MM:SS' to an aware datetime"""
    try:
        dt = datetime.strptime(value.strip(), "%Y:%m:%d %H:%M:%S")
    except (AttributeError, ValueError):
        return None

    if offset:
        try:
            return datetime.fromisoformat(dt.isoformat() + offset.strip())
        except ValueError:
            pass
    return dt.replace(tzinfo=tz.gettz(timezone_str) or tz.UTC)


def extract_metadata(source: Union[Path, str, bytes], timezone_str: str = "UTC") -> dict:
    """
    Read capture time and GPS position from an image.

    Returns {"timestamp": ISO string or None, "location": {"lat", "lon"} or None}.
    Files without EXIF (or that Pillow cannot open) yield neither.
    """
    result = {"timestamp": None, "location": None}
    try:
        fp = io.BytesIO(source) if isinstance(source, bytes) else source
        with Image.open(fp) as img:
            exif = img.getexif()
            if not exif:
                return result
            exif_ifd = exif.get_ifd(ExifTags.IFD.Exif)
            gps_ifd = exif.get_ifd(ExifTags.IFD.GPSInfo)
    except (OSError, ValueError) as e:
        logger.warning("Could not read EXIF data: {}", e)
        return result

    raw_time = exif_ifd.get(DATETIME_ORIGINAL) or exif.get(DATETIME)
    if raw_time:
        captured_at = parse_exif_time(raw_time, exif_ifd.get(OFFSET_TIME_ORIGINAL), timezone_str)
        if captured_at:
            result["timestamp"] = captured_at.isoformat()

    if gps_ifd:
        result["location"] = parse_gps(gps_ifd)

    return result
