"""
Provider-independent conversation threading.

Thread ids depend only on a message's headers, subject and sender, so the same
message always lands in the same thread no matter which provider delivered it.

Known limitation: two unrelated messages without References/In-Reply-To that
share a normalized subject and the same sender are merged into one thread.
Stored thread ids rely on this behaviour, so it is kept as is.
"""
import hashlib
import re
from email.utils import parseaddr
from typing import Any, Optional

SUBJECT_THREAD_PREFIX = "subject-"
SUBJECT_HASH_LENGTH = 32

# Reply/forward prefixes across common client languages, with optional counters ("Re[2]:", "Re(3):").
_PREFIX_RE = re.compile(r"^(?:re|fwd|fw|aw|sv|enc|r|tr|wg)\s*(?:\[\d+\]|\(\d+\))?\s*:\s*", re.IGNORECASE)
_LEADING_TAG_RE = re.compile(r"^\[[^\]]*\]\s*")
_WHITESPACE_RE = re.compile(r"\s+")
# Either an <angle-bracketed> id or a bare whitespace-separated token.
_REF_TOKEN_RE = re.compile(r"<([^<>]+)>|([^\s<>]+)")


def _field(message: Any, name: str) -> Any:
    if isinstance(message, dict):
        return message.get(name)
    return getattr(message, name, None)


def normalize_message_id(value: Optional[str]) -> str:
    """Strip angle brackets and whitespace, lowercase."""
    if not value:
        return ""
    return value.strip().strip("<>").strip().lower()


def parse_references(value: Any) -> list[str]:
    """
    Parse a References header into normalized message ids, oldest first.

    Accepts the raw header string ("<a@x> <b@x>") or an already split list.
    """
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        raw = " ".join(str(v) for v in value if v)
    else:
        raw = str(value)
    ids = [bracketed or bare for bracketed, bare in _REF_TOKEN_RE.findall(raw)]
    return [n for n in (normalize_message_id(i) for i in ids) if n]


def normalize_subject(subject: Optional[str]) -> str:
    """
    Lowercase, strip leading reply/forward prefixes and bracketed tags like
    [EXTERNAL] (repeatedly, in any order), collapse whitespace. Brackets later in
    the subject are kept.
    """
    if not subject:
        return ""
    s = subject.lower().strip()
    while True:
        stripped = _PREFIX_RE.sub("", s, count=1).strip()
        stripped = _LEADING_TAG_RE.sub("", stripped, count=1).strip()
        if stripped == s:
            break
        s = stripped
    return _WHITESPACE_RE.sub(" ", s).strip()


def sender_email(sender: Optional[str]) -> str:
    """Bare lowercase address from a From value like 'Ann <ann@x.com>'."""
    if not sender:
        return ""
    _, addr = parseaddr(sender)
    return (addr or sender).strip().lower()


def generate_thread_id(message: Any) -> str:
    """
    Deterministic thread id for a message (object or dict with references,
    in_reply_to, subject, sender):

    1. first References entry (the thread root)
    2. In-Reply-To
    3. "subject-" + truncated SHA-256 of normalized subject and sender address
    """
    references = parse_references(_field(message, "references"))
    if references:
        return references[0]

    in_reply_to = normalize_message_id(_field(message, "in_reply_to"))
    if in_reply_to:
        return in_reply_to

    basis = f"{normalize_subject(_field(message, 'subject'))}|{sender_email(_field(message, 'sender'))}"
    digest = hashlib.sha256(basis.encode("utf-8")).hexdigest()
    return SUBJECT_THREAD_PREFIX + digest[:SUBJECT_HASH_LENGTH]


def resolve_thread_id(message: Any, provider: str) -> str:
    """Provider-native thread ids win but are namespaced by provider; otherwise generate one."""
    native = _field(message, "provider_thread_id")
    if native:
        return f"{(provider or 'unknown').lower()}:{native}"
    return generate_thread_id(message)


def are_in_same_thread(a: Any, b: Any) -> bool:
    if generate_thread_id(a) == generate_thread_id(b):
        return True

    def _names(msg: Any, other: Any) -> bool:
        other_id = normalize_message_id(_field(other, "message_id"))
        if not other_id:
            return False
        linked = parse_references(_field(msg, "references"))
        linked.append(normalize_message_id(_field(msg, "in_reply_to")))
        return other_id in linked

    return _names(a, b) or _names(b, a)
