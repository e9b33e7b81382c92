from urllib.parse import urlparse

from marksync.errors import ValidationError


ALLOWED_URL_SCHEMES = {"http", "https"}


def _text(field: str, raw) -> str:
    if raw is None:
        return ""
    if not isinstance(raw, str):
        raise ValidationError(field, f"{field.capitalize()} must be text")
    return raw.strip()


def validate_title(raw: str | None) -> str:
    title = _text("title", raw)
    if not title:
        raise ValidationError("title", "Please enter a bookmark title")
    return title


def validate_url(raw: str | None) -> str:
    url = _text("url", raw)
    if not url:
        raise ValidationError("url", "Please enter a URL")
    try:
        parsed = urlparse(url)
    except ValueError:
        parsed = None
    if (
        parsed is None
        or parsed.scheme.lower() not in ALLOWED_URL_SCHEMES
        or not parsed.netloc
        or not parsed.hostname
    ):
        raise ValidationError(
            "url", "Please enter a valid URL (must start with http:// or https://)"
        )
    return url


def clean_bookmark_input(title: str | None, url: str | None) -> tuple[str, str]:
    """Validate a create request and return the trimmed ``(title, url)``.

    The title is checked first so the error a user sees matches the order the
    fields are presented in.
    """
    return validate_title(title), validate_url(url)


def json_object(payload) -> dict:
    """Return a decoded JSON body if it is an object, else an empty dict."""
    return payload if isinstance(payload, dict) else {}


def text_field(payload, key: str) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""
