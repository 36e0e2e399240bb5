"""Object-reference prefixes embedded in chat message text.

A message may open with a markdown-style link naming a marketplace object,
for example::

    [service: Cleaning](/s/9)
    price: ₪150
    location: Nablus
    ----
    Is today possible?

:func:`decode` recognizes one such prefix per message and :func:`encode`
writes text that decodes back to the same reference and tail. Decoding never
raises; text without a recognizable prefix yields ``None``.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional, Union
from urllib.parse import urlsplit

CURRENCY_SYMBOLS = "₪$€£"
DEFAULT_CURRENCY = "₪"
SEPARATOR = "----"


class ReferenceKind(str, enum.Enum):
    AUCTION = "auction"
    PRODUCT = "product"
    JOB = "job"
    SERVICE = "service"


class LinkTarget(str, enum.Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


@dataclass(frozen=True)
class AuctionReference:
    title: str
    url: str
    image: Optional[str] = None
    price: Optional[Decimal] = None
    currency: str = DEFAULT_CURRENCY

    kind = ReferenceKind.AUCTION

    def __post_init__(self) -> None:
        if self.price is None and self.currency != DEFAULT_CURRENCY:
            object.__setattr__(self, "currency", DEFAULT_CURRENCY)


@dataclass(frozen=True)
class ProductReference:
    """A listing reference; ``url`` is ``None`` for the hand-typed shorthand."""

    title: str
    url: Optional[str]
    price: Decimal
    currency: str = DEFAULT_CURRENCY
    image: Optional[str] = None

    kind = ReferenceKind.PRODUCT


@dataclass(frozen=True)
class JobReference:
    title: str
    url: str
    company: str
    location: str

    kind = ReferenceKind.JOB


@dataclass(frozen=True)
class ServiceReference:
    title: str
    url: str
    price: Decimal
    location: str
    currency: str = DEFAULT_CURRENCY

    kind = ReferenceKind.SERVICE


ObjectReference = Union[AuctionReference, ProductReference, JobReference, ServiceReference]


class DecodedMessage(NamedTuple):
    reference: ObjectReference
    rest: str


# Amount with an optional currency symbol on either side: "₪1,250.50", "150$".
_AMOUNT = (
    rf"(?P<cur_pre>[{CURRENCY_SYMBOLS}])?\s*"
    r"(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
    rf"(?P<cur_post>[{CURRENCY_SYMBOLS}])?"
)
_HEADER = r"\[{kind}:\s*(?P<title>[^\]\n]+?)\s*\]\((?P<url>[^)\s]+)\)"
_IMAGE_LINE = r"(?:[ \t]*\n[ \t]*!\[[^\]\n]*\]\((?P<image>[^)\s]+)\))?"
_TAIL = rf"(?:\s*\n[ \t]*{SEPARATOR}[ \t]*(?:\n(?P<rest>.*))?)?\s*"

_AUCTION_RE = re.compile(
    _HEADER.format(kind="auction")
    + _IMAGE_LINE
    + rf"(?:[ \t]*\n[ \t]*price:\s*{_AMOUNT}[ \t]*)?"
    + r"(?:"
    + _TAIL.replace("(?P<rest>", "(?P<rest_sep>")
    + r"|\s*\n(?P<rest_plain>.*)"
    + r")",
    re.IGNORECASE | re.DOTALL,
)
_PRODUCT_RE = re.compile(
    _HEADER.format(kind="product")
    + _IMAGE_LINE
    + rf"[ \t]*\n[ \t]*price:\s*{_AMOUNT}[ \t]*"
    + _TAIL,
    re.IGNORECASE | re.DOTALL,
)
_LOOSE_MARKER_RE = re.compile(r"price:", re.IGNORECASE)
_LOOSE_PRICE_RE = re.compile(
    r"\s*"
    rf"(?P<cur_pre>[{CURRENCY_SYMBOLS}])?(?P<amount>\d{{1,3}}(?:,\d{{3}})+(?:\.\d+)?|\d+(?:\.\d+)?)"
    rf"(?P<cur_post>[{CURRENCY_SYMBOLS}])?(?=\s|\Z)"
)
_JOB_RE = re.compile(
    _HEADER.format(kind="job")
    + r"\s+company:\s*(?P<company>.+?)"
    + r"\s+location:\s*(?P<location>.+?)"
    + rf"(?:\s+{SEPARATOR}(?:\s+(?P<rest>.*))?)?\s*",
    re.IGNORECASE | re.DOTALL,
)
_SERVICE_RE = re.compile(
    _HEADER.format(kind="service")
    + rf"[ \t]*\n[ \t]*price:\s*{_AMOUNT}[ \t]*"
    + r"\n[ \t]*location:[ \t]*(?P<location>[^\n]+?)[ \t]*"
    + _TAIL,
    re.IGNORECASE | re.DOTALL,
)


def _amount(match: "re.Match[str]") -> Optional[Decimal]:
    raw = match.group("amount")
    if raw is None:
        return None
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def _currency(match: "re.Match[str]") -> str:
    return match.group("cur_pre") or match.group("cur_post") or DEFAULT_CURRENCY


def _rest(match: "re.Match[str]", *groups: str) -> str:
    for name in groups:
        value = match.group(name)
        if value:
            return value.strip()
    return ""


def _decode_auction(content: str) -> Optional[DecodedMessage]:
    match = _AUCTION_RE.fullmatch(content)
    if match is None:
        return None
    price = _amount(match)
    reference = AuctionReference(
        title=match.group("title"),
        url=match.group("url"),
        image=match.group("image"),
        price=price,
        currency=_currency(match) if price is not None else DEFAULT_CURRENCY,
    )
    return DecodedMessage(reference, _rest(match, "rest_sep", "rest_plain"))


def _decode_product(content: str) -> Optional[DecodedMessage]:
    match = _PRODUCT_RE.fullmatch(content)
    if match is None:
        return None
    price = _amount(match)
    if price is None:
        return None
    reference = ProductReference(
        title=match.group("title"),
        url=match.group("url"),
        price=price,
        currency=_currency(match),
        image=match.group("image"),
    )
    return DecodedMessage(reference, _rest(match, "rest"))


def _decode_product_loose(content: str) -> Optional[DecodedMessage]:
    # Heuristic: ordinary chat such as "is the price: 50₪ final?" also matches.
    if content.startswith("["):
        return None
    first_newline = content.find("\n")
    for marker in _LOOSE_MARKER_RE.finditer(content):
        end = marker.start()
        title_end = end
        while title_end > 0 and content[title_end - 1].isspace():
            title_end -= 1
        if title_end == end or title_end == 0:
            continue
        if 0 <= first_newline < title_end:
            # every later title would span the same line break
            return None
        match = _LOOSE_PRICE_RE.match(content, marker.end())
        if match is None or not (match.group("cur_pre") or match.group("cur_post")):
            continue
        price = _amount(match)
        if price is None:
            continue
        reference = ProductReference(title=content[:title_end], url=None, price=price, currency=_currency(match))
        return DecodedMessage(reference, content[match.end():].strip())
    return None


def _decode_job(content: str) -> Optional[DecodedMessage]:
    match = _JOB_RE.fullmatch(content)
    if match is None:
        return None
    reference = JobReference(
        title=match.group("title"),
        url=match.group("url"),
        company=match.group("company").strip(),
        location=match.group("location").strip(),
    )
    return DecodedMessage(reference, _rest(match, "rest"))


def _decode_service(content: str) -> Optional[DecodedMessage]:
    match = _SERVICE_RE.fullmatch(content)
    if match is None:
        return None
    price = _amount(match)
    if price is None:
        return None
    reference = ServiceReference(
        title=match.group("title"),
        url=match.group("url"),
        price=price,
        location=match.group("location"),
        currency=_currency(match),
    )
    return DecodedMessage(reference, _rest(match, "rest"))


_DECODERS = (
    _decode_auction,
    _decode_product,
    _decode_product_loose,
    _decode_job,
    _decode_service,
)


def decode(content: object) -> Optional[DecodedMessage]:
    """Return the reference embedded in ``content`` and the free-text tail."""

    if not isinstance(content, str):
        return None
    text = content.strip()
    if not text:
        return None
    for decoder in _DECODERS:
        decoded = decoder(text)
        if decoded is not None:
            return decoded
    return None


def _amount_text(amount: Decimal) -> str:
    if not isinstance(amount, Decimal):
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"invalid amount: {amount!r}") from None
    if not amount.is_finite() or amount.is_signed():
        raise ValueError(f"amount must be a non-negative finite number: {amount!r}")
    return f"{amount:f}"


def _check_currency(currency: str) -> str:
    if len(currency) != 1 or currency not in CURRENCY_SYMBOLS:
        raise ValueError(f"unsupported currency symbol: {currency!r}")
    return currency


def format_amount(amount: Decimal, currency: str = DEFAULT_CURRENCY) -> str:
    return f"{_check_currency(currency)}{_amount_text(amount)}"


def _check_line(name: str, value: str, *forbidden: str) -> str:
    if not value or value != value.strip() or "\n" in value:
        raise ValueError(f"{name} must be a non-empty single line without surrounding spaces: {value!r}")
    for token in forbidden:
        if token.lower() in value.lower():
            raise ValueError(f"{name} cannot contain {token!r}: {value!r}")
    return value


def _check_link(name: str, value: str) -> str:
    if not value or ")" in value or any(char.isspace() for char in value):
        raise ValueError(f"{name} must be a non-empty link without spaces or ')': {value!r}")
    return value


def _header(kind: ReferenceKind, title: str, url: str) -> str:
    return f"[{kind.value}: {_check_line('title', title, ']')}]({_check_link('url', url)})"


def _tail(rest: str) -> str:
    rest = rest.strip()
    if not rest:
        return ""
    return f"\n{SEPARATOR}\n{rest}"


def encode(reference: ObjectReference, rest: str = "") -> str:
    """Render ``reference`` followed by ``rest`` as message text.

    Raises ``ValueError`` for references whose text would not decode back to
    the same reference.
    """

    if isinstance(reference, AuctionReference):
        lines = [_header(reference.kind, reference.title, reference.url)]
        if reference.image:
            lines.append(f"![{reference.title}]({_check_link('image', reference.image)})")
        if reference.price is not None:
            lines.append(f"price: {format_amount(reference.price, reference.currency)}")
        return "\n".join(lines) + _tail(rest)
    if isinstance(reference, ProductReference):
        if reference.url is None:
            if reference.image:
                raise ValueError("a product reference without a url cannot carry an image")
            title = _check_line("title", reference.title, "price:")
            if title.startswith("["):
                raise ValueError(f"title cannot start with '[': {title!r}")
            text = f"{title} price: {_amount_text(reference.price)}{_check_currency(reference.currency)}"
            rest = rest.strip()
            return f"{text} {rest}" if rest else text
        lines = [_header(reference.kind, reference.title, reference.url)]
        if reference.image:
            lines.append(f"![{reference.title}]({_check_link('image', reference.image)})")
        lines.append(f"price: {format_amount(reference.price, reference.currency)}")
        return "\n".join(lines) + _tail(rest)
    if isinstance(reference, JobReference):
        lines = [
            _header(reference.kind, reference.title, reference.url),
            f"company: {_check_line('company', reference.company, 'location:')}",
            f"location: {_check_line('location', reference.location, SEPARATOR)}",
        ]
        return "\n".join(lines) + _tail(rest)
    if isinstance(reference, ServiceReference):
        lines = [
            _header(reference.kind, reference.title, reference.url),
            f"price: {format_amount(reference.price, reference.currency)}",
            f"location: {_check_line('location', reference.location)}",
        ]
        return "\n".join(lines) + _tail(rest)
    raise TypeError(f"unsupported reference type: {type(reference).__name__}")


def classify_link(url: str, origin: Optional[str] = None) -> LinkTarget:
    """Classify ``url`` as in-app navigation or an external link."""

    text = (url or "").strip()
    if text.startswith("/") and not text.startswith("//"):
        return LinkTarget.INTERNAL
    try:
        target = urlsplit(text)
    except ValueError:
        return LinkTarget.EXTERNAL
    if not target.scheme and not target.netloc:
        return LinkTarget.INTERNAL
    if origin:
        try:
            home = urlsplit(origin)
        except ValueError:
            return LinkTarget.EXTERNAL
        same_scheme = not target.scheme or target.scheme.lower() == home.scheme.lower()
        if same_scheme and target.netloc.lower() == home.netloc.lower():
            return LinkTarget.INTERNAL
    return LinkTarget.EXTERNAL
