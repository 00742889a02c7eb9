"""
Identity (JID) helpers for the messaging network.

Identifiers look like `<user>[:<device>]@<server>`:
- `@s.whatsapp.net` is the protocol's personal-contact server; this project
  exposes personal contacts with the `@c.us` suffix instead.
- `@lid` identifiers are internal-only aliases; only their digits are kept.
- `@g.us` identifiers are groups and are never rewritten.
- `@broadcast` / `@newsletter` are broadcast/system channels.
"""

from __future__ import annotations

import re
from typing import Callable, Iterable, Optional, Sequence, Tuple

from loguru import logger


PERSONAL_SERVER = "c.us"
USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"
LID_SERVER = "lid"
BROADCAST_SERVER = "broadcast"
NEWSLETTER_SERVER = "newsletter"

_SYSTEM_SERVERS = {BROADCAST_SERVER, NEWSLETTER_SERVER}
_NON_DIGIT = re.compile(r"\D")

# A number rule receives the bare digits of a personal identifier and returns
# corrected digits, or None when it does not apply.
NumberRule = Callable[[str], Optional[str]]


class InvalidIdentityError(ValueError):
    """Raised when an identifier cannot be resolved to a usable form."""


def split_jid(jid: str) -> Tuple[str, Optional[str], str]:
    """Split `user[:device]@server` into (user, device, server)."""
    if not jid or "@" not in jid:
        raise InvalidIdentityError(f"Not a qualified identifier: {jid!r}")
    user, server = jid.rsplit("@", 1)
    device: Optional[str] = None
    if ":" in user:
        user, device = user.split(":", 1)
    if not server:
        raise InvalidIdentityError(f"Identifier has no server part: {jid!r}")
    return user, device, server


def server_of(jid: Optional[str]) -> str:
    if not jid or "@" not in jid:
        return ""
    return jid.rsplit("@", 1)[1]


def is_group(jid: Optional[str]) -> bool:
    return server_of(jid) == GROUP_SERVER


def is_system_channel(jid: Optional[str]) -> bool:
    return server_of(jid) in _SYSTEM_SERVERS


def normalized_user(jid: str) -> str:
    """Drop the device part and fold `@c.us` onto the protocol's user server."""
    user, _device, server = split_jid(jid)
    if server == PERSONAL_SERVER:
        server = USER_SERVER
    return f"{user}@{server}"


def to_personal_form(jid: str) -> str:
    """Rewrite a protocol user identifier to the `@c.us` personal-contact form."""
    user, _device, server = split_jid(jid)
    if server in (USER_SERVER, PERSONAL_SERVER):
        return f"{user}@{PERSONAL_SERVER}"
    return jid


# -------- Regional number rules --------
def br_mobile_digit_rule(digits: str) -> Optional[str]:
    """
    Insert the mandatory mobile `9` into 12-digit Brazilian numbers.

    Brazilian mobiles are `55 + DDD(2) + 9 + 8 digits`. Some senders still
    arrive in the legacy 12-digit form without the `9`. This is a narrow
    heuristic for one numbering plan, not a general rule.
    """
    if digits.startswith("55") and len(digits) == 12 and digits[4] != "9":
        return digits[:4] + "9" + digits[4:]
    return None


DEFAULT_NUMBER_RULES: Tuple[NumberRule, ...] = (br_mobile_digit_rule,)


def apply_number_rules(digits: str, rules: Iterable[NumberRule]) -> str:
    for rule in rules:
        fixed = rule(digits)
        if fixed is not None and fixed != digits:
            logger.warning(f"Corrected number {digits} -> {fixed} via {getattr(rule, '__name__', rule)}")
            return fixed
    return digits


# -------- Public normalization --------
def normalize_sender(jid: str, rules: Sequence[NumberRule] = DEFAULT_NUMBER_RULES) -> str:
    """
    Normalize a resolved sender identifier to its canonical form.

    - Groups pass through unchanged.
    - `@lid` identifiers keep only their digits and move to the user server.
    - Personal identifiers end up as `<digits>@c.us`, after number rules.
    """
    if is_group(jid):
        return jid
    user, _device, server = split_jid(jid)
    if server == LID_SERVER:
        digits = _NON_DIGIT.sub("", user)
        if not digits:
            raise InvalidIdentityError(f"Internal identifier carries no digits: {jid!r}")
        logger.warning(f"Internal identifier detected, stripping: {jid}")
        jid = f"{digits}@{USER_SERVER}"

    normalized = normalized_user(jid)
    user, _device, server = split_jid(normalized)
    if server != USER_SERVER:
        return normalized

    digits = _NON_DIGIT.sub("", user)
    if not digits:
        raise InvalidIdentityError(f"Personal identifier carries no digits: {jid!r}")
    digits = apply_number_rules(digits, rules)
    return f"{digits}@{PERSONAL_SERVER}"


def normalize_target(to: str) -> str:
    """Normalize a send target: bare numbers get the personal suffix."""
    to = (to or "").strip()
    if not to:
        raise InvalidIdentityError("Empty send target")
    if "@" in to:
        jid = to
    else:
        digits = _NON_DIGIT.sub("", to)
        if not digits:
            raise InvalidIdentityError(f"Send target carries no digits: {to!r}")
        jid = f"{digits}@{USER_SERVER}"
    return to_personal_form(normalized_user(jid))


__all__ = [
    "PERSONAL_SERVER",
    "USER_SERVER",
    "GROUP_SERVER",
    "LID_SERVER",
    "NumberRule",
    "InvalidIdentityError",
    "DEFAULT_NUMBER_RULES",
    "br_mobile_digit_rule",
    "apply_number_rules",
    "is_group",
    "is_system_channel",
    "normalize_sender",
    "normalize_target",
    "normalized_user",
    "split_jid",
    "to_personal_form",
]
