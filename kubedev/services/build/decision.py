"""
Rebuild decision for image build records.

An image is rebuilt when its Dockerfile changed since the last run. The record
stores the Dockerfile modification time as a string with nanosecond precision,
and the comparison is exact, so any change of the modification time (even a
sub-second one) triggers a rebuild.
"""

import logging
import os
import re
from datetime import datetime, timedelta, timezone

from ...exceptions import ConfigurationError
from ...project_config import ImageConfig

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Written when the Dockerfile is missing, mirrors the zero time of the record format
ZERO_TIMESTAMP = "0001-01-01T00:00:00.000000000Z"

_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?(Z|[+-]\d{2}:\d{2})$"
)


def format_timestamp(ns: int) -> str:
    """
    Format nanoseconds since the epoch as UTC with nine fractional digits.

    Example: 1700000000123456789 -> "2023-11-14T22:13:20.123456789Z"
    """
    seconds, fraction = divmod(ns, 1_000_000_000)
    moment = EPOCH + timedelta(seconds=seconds)
    return f"{moment.strftime('%Y-%m-%dT%H:%M:%S')}.{fraction:09d}Z"


def parse_timestamp(value: str) -> int:
    """
    Parse an RFC 3339 timestamp into nanoseconds since the epoch.

    Accepts the format written by format_timestamp as well as shorter fractions
    and numeric UTC offsets.

    Raises:
        ValueError: If the value is not an RFC 3339 timestamp
    """
    match = _TIMESTAMP_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid timestamp: {value!r}")

    base, fraction, zone = match.groups()
    if zone == "Z":
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))

    moment = datetime.strptime(base, "%Y-%m-%dT%H:%M:%S").replace(tzinfo=tz)
    delta = moment - EPOCH
    seconds = delta.days * 86400 + delta.seconds
    nanos = int((fraction or "").ljust(9, "0"))
    return seconds * 1_000_000_000 + nanos


def should_rebuild(image: ImageConfig, dockerfile_path: str, force_flag_explicitly_set: bool) -> bool:
    """
    Decide whether an image must be rebuilt.

    - Dockerfile missing and never built: ConfigurationError
    - Dockerfile missing but built before: no rebuild
    - Build flag given explicitly, or never built: rebuild
    - Otherwise: rebuild iff the modification time differs from the stored one

    The stored timestamp is always replaced by the Dockerfile's current
    modification time, whatever the decision.
    """
    build = image.build
    must_rebuild = True

    try:
        stat = os.stat(dockerfile_path)
    except OSError as e:
        if build.latest_timestamp is None:
            raise ConfigurationError(f"Dockerfile missing: {e}") from e
        build.latest_timestamp = ZERO_TIMESTAMP
        return False

    modified_ns = stat.st_mtime_ns

    if not force_flag_explicitly_set and build.latest_timestamp is not None:
        try:
            must_rebuild = parse_timestamp(build.latest_timestamp) != modified_ns
        except ValueError:
            logger.warning(f"[BUILD] Ignoring unreadable build timestamp {build.latest_timestamp!r}")
            must_rebuild = True

    build.latest_timestamp = format_timestamp(modified_ns)
    return must_rebuild
