TILE_SIZE = 512

# Tiles along (x, y) for each supported zoom level.
# Street View only serves full quality panoramas at zoom 3 and 4.
GRID_SIZES = {
    3: (8, 4),    # 4096x2048
    4: (16, 8),   # 8192x4096
}

RESOLUTION_LABELS = {
    3: "High",
    4: "Maximum",
}

TILE_URL = (
    "https://streetviewpixels-pa.googleapis.com/v1/tile"
    "?cb_client=maps_sv.tactile&panoid={panoid}&x={x}&y={y}&zoom={zoom}&nbt=1&fover=2"
)

REQUEST_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36"
    ),
}

CONCURRENT_DOWNLOADS = 8
TILE_RETRIES = 2
TILE_BACKOFF = 0.2   # seconds, multiplied by the attempt number
TILE_TIMEOUT = 30

# A pixel counts as content if any channel is above this value.
BRIGHTNESS_THRESHOLD = 20
# Fraction of content pixels below which a tile, row or column is background.
BLANK_TOLERANCE = 0.02
SAMPLE_STRIDE = 4

# Wrap-around seam search
WRAP_STRIP_WIDTH = 16
WRAP_BAND = (0.3, 0.7)
WRAP_X_STEP = 2
WRAP_Y_STEP = 8
WRAP_SEARCH_START = 0.25
WRAP_STRICT_DIFF = 8.0
WRAP_ACCEPT_DIFF = 15.0
WRAP_MIN_STRIP_STD = 4.0

JPEG_QUALITY = 95
