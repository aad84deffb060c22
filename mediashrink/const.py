VIDEO_EXTENSIONS = [
    ".mp4",
    ".mkv",
    ".avi",
    ".mov",
    ".webm",
    ".flv",
]

DEFAULT_FILENAME = "video.mp4"
FALLBACK_EXTENSION = ".mp4"
COMPRESSED_PREFIX = "compressed_"
OUTPUT_MEDIA_TYPE = "video/mp4"

SOURCE_REQUEST_HEADERS = {
    "accept": "*/*",
    "accept-encoding": "gzip, deflate, br",
    "connection": "keep-alive",
    "range": "bytes=0-",
}
