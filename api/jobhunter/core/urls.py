from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "trk", "trackingid", "refid"}

LINKEDIN_JOBS_SEARCH_URL = "https://www.linkedin.com/jobs/search"
WORK_TYPE_CODES = {
    "onsite": "1",
    "remote": "2",
    "hybrid": "3",
}


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_KEYS


def normalize_url(raw_url: str) -> str:
    """Conservative URL normalization used as the duplicate-lead key."""
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()

    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def build_search_url(keyword: str, location: str, work_type: str) -> str:
    """Canonical provider query for a keyword/location/work-type search."""
    params = [
        ("keywords", keyword),
        ("location", location),
        ("f_WT", WORK_TYPE_CODES[work_type]),
    ]
    return f"{LINKEDIN_JOBS_SEARCH_URL}?{urlencode(params)}"


def is_safe_return_url(url: str, allowed_origins: set[str]) -> bool:
    # browsers read "\" as "/" and drop tabs and newlines inside URLs
    if "\\" in url or any(ord(char) < 0x20 for char in url):
        return False
    parsed = urlparse(url)
    if not parsed.scheme and not parsed.netloc:
        # relative paths only; "//host" is protocol-relative
        return url.startswith("/") and url[1:2] != "/"
    origin = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
    return parsed.scheme.lower() in {"http", "https"} and origin in allowed_origins


def append_query(url: str, params: dict[str, str]) -> str:
    parsed = urlparse(url)
    pairs = parse_qsl(parsed.query, keep_blank_values=True)
    pairs.extend(params.items())
    return urlunparse(parsed._replace(query=urlencode(pairs)))
