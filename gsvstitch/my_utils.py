"""
Utility module for Google Street View panorama stitching.

This module provides helper functions and classes for:

- Timing code execution (`timer` context manager).
- Extracting panorama IDs and coordinates from Google Maps URLs (`extract_url_data`).
- Loading datasets (`open_dataset`).
- Parsing command-line arguments for the stitcher (`parse_args`).
- Encoding, saving, and formatting panorama images (`encode_jpeg`, `to_data_uri`,
  `save_img`, `format_size`).

Dependencies:
- PIL/Pillow for image encoding
- argparse for CLI argument parsing
- json, re, base64 and os for dataset, URL and file handling
"""
import argparse
import base64
import json
import os
import re
import time
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image

from .constants import CONCURRENT_DOWNLOADS, JPEG_QUALITY, TILE_RETRIES

PANO_ID_PATTERNS = (
    re.compile(r"pano=([a-zA-Z0-9_-]+)"),
    re.compile(r"!1s([a-zA-Z0-9_-]+)(?:!|&)"),
)
COORDS_PATTERN = re.compile(r"@(-?\d+\.\d+),(-?\d+\.\d+)")
LL_PATTERN = re.compile(r"ll=(-?\d+\.\d+),(-?\d+\.\d+)")


class timer:
    """
    Context manager to measure and print elapsed execution time.

    Usage:
        with timer():
            # your code here
    -----
    >>> with timer() as t:
    ...     # some code to measure
    ...     time.sleep(2)
    >>> print(t.time_elapsed)
    '0h 0m 2.00s'
    """

    def __enter__(self):
        self.start = time.time()
        self.time_elapsed = None
        return self


    def __exit__(self, *args):
        self.end = time.time()
        self.interval = self.end - self.start
        hrs, rem = divmod(self.interval, 3600)
        mins, secs = divmod(rem, 60)
        self.time_elapsed = f"{int(hrs)}h {int(mins)}m {secs:.2f}s"
        return False


def extract_url_data(url: str) -> Tuple[Optional[str], Optional[Tuple[float, float]]]:
    """
    Pull the panorama ID and camera coordinates out of a Google Maps URL.

    Both `...pano=<id>` and `...!1s<id>!...` forms are understood. Coordinates
    come from the `@lat,lng` part of the path, or from an `ll=lat,lng`
    parameter when there is none.

    Args:
        url (str): A Google Maps Street View URL.

    Returns:
        tuple: (panoid, (lat, lng)); either item is None when not found.
    """
    panoid = None
    for pattern in PANO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            panoid = match.group(1)
            break

    match = COORDS_PATTERN.search(url) or LL_PATTERN.search(url)
    coords = (float(match.group(1)), float(match.group(2))) if match else None

    return panoid, coords


def open_dataset(dataset_location: str) -> list[str]:
    """
    Load dataset JSON file.

    Args:
        dataset_location (str): Path to dataset JSON file.

    Returns:
        list[str]: Parsed JSON data.
    """
    with open(dataset_location) as dataset:
        return json.load(dataset)



def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def parse_args(argv=None):
    """
    Parse command-line arguments for the panorama stitcher.

    Exactly one source of panoramas is required unless --list-resolutions is given.

    Arguments:
        --url (str): Google Maps Street View URL to extract the panorama ID from.
        --panoid (str): Panorama ID.
        --dataset (str): Path to a JSON list of panorama IDs.
        --zoom (int, optional): Zoom level (3-4). (Default: 3)
        --workers (int, optional): Concurrent tile downloads per panorama. (Default: 8)
        --retries (int, optional): Attempts per tile. (Default: 2)
        --max-pano (int, optional): Max concurrent pano downloads. (Default: 10)
        --processes (int, optional): Max process pool workers. (Default: 4)
        --limit (int, optional): Limit panoids for testing. (Default: None)
        --output (str, optional): Output directory. (Default: current working directory)
        --conn-limit (int, optional): Maximum TCP connections. (Default: 100)
        --list-resolutions: Print the supported resolutions and exit.

    Returns:
        argparse.Namespace: Parsed arguments object.
    """
    parser = argparse.ArgumentParser(
        description="Google Street View Panorama Stitcher"
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--url", type=str, help="Google Maps Street View URL")
    source.add_argument("--panoid", type=str, help="Panorama ID")
    source.add_argument("--dataset", type=str, help="Path to dataset.json")

    parser.add_argument("--zoom", type=int, default=3, help="Zoom level (3-4)")
    parser.add_argument("--workers", type=positive_int, default=CONCURRENT_DOWNLOADS, help="Concurrent tile downloads per pano")
    parser.add_argument("--retries", type=positive_int, default=TILE_RETRIES, help="Attempts per tile")
    parser.add_argument("--max-pano", type=int, default=10, help="Max concurrent pano downloads")
    parser.add_argument("--processes", type=int, default=4, help="Max process pool workers")
    parser.add_argument("--limit", type=int, default=None, help="Limit panoids")
    parser.add_argument("--output", type=str, default=os.getcwd(), help="Output directory (default: current working directory)")
    parser.add_argument("--conn-limit", type=int, default=100, help="Maximum TCP connections (default: 100)")
    parser.add_argument("--list-resolutions", action="store_true", help="List supported resolutions and exit")

    args = parser.parse_args(argv)
    if not args.list_resolutions and not (args.url or args.panoid or args.dataset):
        parser.error("one of --url, --panoid or --dataset is required")
    return args



def format_size(num_bytes: int) -> str:
    """
    Convert a file size in bytes into a human-readable string.

    Args:
        num_bytes (int): File size in bytes.

    Returns:
        str: Formatted size (e.g., '512.00 KB', '384.00 MB').
    """
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if num_bytes < 1024:
            return f"{num_bytes:.2f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.2f} PB"


def encode_jpeg(full_img: Image.Image, quality: int = JPEG_QUALITY) -> bytes:
    """Encode an image as JPEG bytes."""
    buf = BytesIO()
    full_img.convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def to_data_uri(data: bytes, mime: str = "image/jpeg") -> str:
    """Wrap encoded image bytes in a base64 data URI."""
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def save_img(full_img: Image.Image, output_dir: str, panoid: str, zoom_level: int) -> str:
    """
    Save a stitched panorama to disk and return its file size.

    The image goes into a subdirectory named after the zoom level
    (e.g. "panos_z3") as "<panoid>_<width>x<height>.jpg". The size is part of
    the name because cropping and wrap removal make it vary per panorama.

    Args:
        full_img (Image): A PIL Image object to be saved.
        output_dir (str): Base directory where the image should be stored.
        panoid (str): Unique panorama identifier used in the output filename.
        zoom_level (int): Zoom level used to organize the output directory.

    Returns:
        str: File size of the saved image in a human-readable format
             (e.g., "512.00 KB", "1.23 MB").
    """
    zoom_output_folder = os.path.join(output_dir, f"panos_z{zoom_level}")
    os.makedirs(zoom_output_folder, exist_ok=True)
    width, height = full_img.size
    out_path = os.path.join(zoom_output_folder, f"{panoid}_{width}x{height}.jpg")

    with open(out_path, "wb") as out:
        out.write(encode_jpeg(full_img))
    file_size_bytes = os.path.getsize(out_path)
    file_size_fmt = format_size(file_size_bytes)

    return file_size_fmt
