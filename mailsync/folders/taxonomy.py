"""
Folder taxonomy normalization.

Maps a provider's raw folder or label name onto a fixed set of canonical
folder types, with a confidence score, and derives the default sync policy
from that classification. Everything here is a pure function.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


class FolderType(str, Enum):
    """Canonical folder types all provider folders normalize into."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    STARRED = "starred"
    IMPORTANT = "important"
    ALL_MAIL = "all_mail"
    OUTBOX = "outbox"
    CUSTOM = "custom"


EXACT_CONFIDENCE = 1.0
CONTAINS_CONFIDENCE = 0.95
CONTAINED_CONFIDENCE = 0.90
STRUCTURAL_CONFIDENCE = 0.85
STRIPPED_CONFIDENCE = 0.75
CUSTOM_CONFIDENCE = 0.5
REVIEW_THRESHOLD = 0.8

ALWAYS_ENABLED = frozenset({FolderType.INBOX, FolderType.SENT, FolderType.DRAFTS})
ALWAYS_DISABLED = frozenset({FolderType.SPAM, FolderType.TRASH})
CRITICAL_FOLDERS = (
    FolderType.INBOX,
    FolderType.SENT,
    FolderType.DRAFTS,
    FolderType.TRASH,
    FolderType.SPAM,
)


FOLDER_NAME_VARIANTS: Dict[FolderType, List[str]] = {
    FolderType.INBOX: [
        "inbox", "bandeja de entrada", "entrada", "boîte de réception",
        "réception", "posteingang", "eingang", "posta in arrivo", "arrivo",
        "caixa de entrada", "postvak in", "входящие", "受信トレイ", "受信箱",
        "收件箱", "收件匣",
    ],
    FolderType.SENT: [
        "sent", "sent items", "sent mail", "sent messages", "sent folder",
        "sentitems", "sent email", "[gmail]/sent mail", "[google mail]/sent mail",
        "enviados", "enviadas", "elementos enviados", "correo enviado",
        "envoyés", "éléments envoyés", "messages envoyés",
        "gesendet", "gesendete elemente", "gesendete objekte",
        "posta inviata", "inviati", "elementi inviati", "itens enviados",
        "verzonden", "verzonden items", "отправленные",
        "送信済みアイテム", "送信済み", "已发送邮件", "已发送", "寄件備份",
    ],
    FolderType.DRAFTS: [
        "drafts", "draft", "draft messages", "[gmail]/drafts",
        "[google mail]/drafts", "borradores", "brouillons", "entwürfe",
        "bozze", "rascunhos", "concepten", "черновики", "下書き", "草稿", "草稿匣",
    ],
    FolderType.TRASH: [
        "trash", "deleted items", "deleted", "deleted messages",
        "deleted emails", "deleteditems", "bin", "recycle bin", "rubbish",
        "[gmail]/trash", "[gmail]/bin", "[google mail]/trash", "[google mail]/bin",
        "papelera", "elementos eliminados", "eliminados", "corbeille",
        "éléments supprimés", "supprimés", "papierkorb", "gelöschte elemente",
        "gelöschte objekte", "gelöscht", "posta eliminata", "cestino",
        "eliminati", "itens excluídos", "lixeira", "excluídos",
        "verwijderde items", "prullenbak", "удаленные", "корзина",
        "削除済みアイテム", "ごみ箱", "已删除邮件", "已删除", "垃圾桶",
    ],
    FolderType.SPAM: [
        "spam", "junk", "junk email", "junk e-mail", "junk mail", "junkemail",
        "bulk mail", "quarantine", "[gmail]/spam", "[google mail]/spam",
        "correo no deseado", "no deseado", "courrier indésirable",
        "indésirables", "junk-e-mail", "posta indesiderata",
        "lixo eletrônico", "ongewenste e-mail", "спам",
        "нежелательная почта", "迷惑メール", "垃圾邮件", "垃圾郵件",
    ],
    FolderType.ARCHIVE: [
        "archive", "archives", "archived", "archiv", "archivo", "archivio",
        "arquivo", "archief", "архив", "アーカイブ", "存档", "归档",
    ],
    FolderType.STARRED: [
        "starred", "flagged", "favorites", "favourites", "[gmail]/starred",
        "[google mail]/starred", "destacados", "con estrella", "suivis",
        "messages suivis", "markiert", "speciali", "con stella",
        "com estrela", "favoritos", "met ster", "помеченные", "スター付き",
        "已加星标",
    ],
    FolderType.IMPORTANT: [
        "important", "priority", "vip", "[gmail]/important",
        "[google mail]/important", "importante", "wichtig", "belangrijk",
        "важные", "重要",
    ],
    FolderType.ALL_MAIL: [
        "all mail", "[gmail]/all mail", "[google mail]/all mail",
        "alle nachrichten", "tous les messages", "tutti i messaggi",
        "todos os e-mails", "вся почта", "すべてのメール", "所有邮件",
    ],
    FolderType.OUTBOX: [
        "outbox", "out box", "outgoing", "to send", "sending", "enviando",
        "bandeja de salida", "boîte d'envoi", "postausgang",
        "posta in uscita", "caixa de saída", "postvak uit", "исходящие",
        "送信トレイ", "发件箱",
    ],
}

# Graph well-known folder names and RFC 6154 special-use flags.
WELL_KNOWN_NAMES: Dict[str, FolderType] = {
    "inbox": FolderType.INBOX,
    "sentitems": FolderType.SENT,
    "drafts": FolderType.DRAFTS,
    "deleteditems": FolderType.TRASH,
    "junkemail": FolderType.SPAM,
    "archive": FolderType.ARCHIVE,
    "outbox": FolderType.OUTBOX,
}

SPECIAL_USE_FLAGS: Dict[str, FolderType] = {
    "\\sent": FolderType.SENT,
    "\\drafts": FolderType.DRAFTS,
    "\\trash": FolderType.TRASH,
    "\\junk": FolderType.SPAM,
    "\\archive": FolderType.ARCHIVE,
    "\\all": FolderType.ALL_MAIL,
    "\\flagged": FolderType.STARRED,
    "\\important": FolderType.IMPORTANT,
}

SORT_ORDER: Dict[FolderType, int] = {
    FolderType.INBOX: 0,
    FolderType.STARRED: 1,
    FolderType.IMPORTANT: 2,
    FolderType.SENT: 3,
    FolderType.DRAFTS: 4,
    FolderType.OUTBOX: 5,
    FolderType.ARCHIVE: 6,
    FolderType.ALL_MAIL: 7,
    FolderType.SPAM: 8,
    FolderType.TRASH: 9,
    FolderType.CUSTOM: 100,
}

DISPLAY_NAMES: Dict[FolderType, str] = {
    FolderType.INBOX: "Inbox",
    FolderType.SENT: "Sent",
    FolderType.DRAFTS: "Drafts",
    FolderType.TRASH: "Trash",
    FolderType.SPAM: "Spam",
    FolderType.ARCHIVE: "Archive",
    FolderType.STARRED: "Starred",
    FolderType.IMPORTANT: "Important",
    FolderType.ALL_MAIL: "All Mail",
    FolderType.OUTBOX: "Outbox",
}

# Category assigned to messages on the folder fast path.
FOLDER_CATEGORIES: Dict[FolderType, str] = {
    FolderType.INBOX: "inbox",
    FolderType.SENT: "sent",
    FolderType.DRAFTS: "drafts",
    FolderType.SPAM: "junk",
    FolderType.TRASH: "deleted",
    FolderType.OUTBOX: "outbox",
    FolderType.ARCHIVE: "archive",
}
DEFAULT_CATEGORY = "inbox"

_HIERARCHY = re.compile(r"^(?P<root>\[(?:gmail|google mail)\]|inbox)(?P<sep>[/.])(?P<leaf>.+)$")
_STRIP = re.compile(r"[\s\-_.,;:'\"()\[\]/\\]+")


@dataclass(frozen=True)
class FolderClassification:
    """Result of normalizing a folder name."""
    folder_type: FolderType
    confidence: float
    needs_review: bool
    sync_enabled: bool

    def to_dict(self) -> dict:
        return {
            "folder_type": self.folder_type.value,
            "confidence": self.confidence,
            "needs_review": self.needs_review,
            "sync_enabled": self.sync_enabled,
        }


def _contains(haystack: str, needle: str) -> bool:
    """Substring test that respects word boundaries for ASCII needles."""
    if not needle or not haystack:
        return False
    if needle.isascii():
        pattern = rf"(?<![a-z0-9]){re.escape(needle)}(?![a-z0-9])"
        return re.search(pattern, haystack) is not None
    return needle in haystack


def _strip(value: str) -> str:
    return _STRIP.sub("", value)


def _exact(name: str) -> Optional[FolderType]:
    for folder_type, variants in FOLDER_NAME_VARIANTS.items():
        if name in variants:
            return folder_type
    return None


def _best_substring(name: str) -> Optional[Tuple[float, FolderType]]:
    best: Optional[Tuple[float, int, FolderType]] = None
    for folder_type, variants in FOLDER_NAME_VARIANTS.items():
        for variant in variants:
            if _contains(name, variant):
                candidate = (CONTAINS_CONFIDENCE, len(variant), folder_type)
            elif len(name) >= 3 and len(name) * 2 >= len(variant) and _contains(variant, name):
                candidate = (CONTAINED_CONFIDENCE, len(name), folder_type)
            else:
                continue
            if best is None or candidate[:2] > best[:2]:
                best = candidate
    if best is None:
        return None
    return best[0], best[2]


def _structural(
    name: str,
    provider: Optional[str],
    flags: Sequence[str]
) -> Optional[FolderType]:
    for flag in flags:
        folder_type = SPECIAL_USE_FLAGS.get(flag.lower())
        if folder_type:
            return folder_type

    match = _HIERARCHY.match(name)
    if match:
        leaf = match.group("leaf").strip()
        folder_type = _exact(leaf)
        if folder_type:
            return folder_type
        found = _best_substring(leaf)
        if found:
            return found[1]

    if provider == "microsoft":
        return WELL_KNOWN_NAMES.get(_strip(name))
    return None


def _stripped_match(name: str) -> Optional[FolderType]:
    stripped = _strip(name)
    if not stripped:
        return None
    for folder_type, variants in FOLDER_NAME_VARIANTS.items():
        for variant in variants:
            if _strip(variant) == stripped:
                return folder_type
    return None


def detect_folder_type(
    name: str,
    provider: Optional[str] = None,
    flags: Iterable[str] = ()
) -> Tuple[FolderType, float]:
    """
    Detect the canonical type of a folder name.

    Args:
        name: Raw folder or label name as reported by the provider
        provider: Optional provider kind ("microsoft", "gmail", "imap")
        flags: Optional IMAP special-use flags from LIST

    Returns:
        Tuple of (folder type, confidence)
    """
    lowered = (name or "").strip().casefold()
    if not lowered:
        return FolderType.CUSTOM, CUSTOM_CONFIDENCE

    folder_type = _exact(lowered)
    if folder_type:
        return folder_type, EXACT_CONFIDENCE

    # Hierarchical names are judged on their leaf, otherwise every
    # INBOX child would look like the inbox itself.
    if not _HIERARCHY.match(lowered):
        found = _best_substring(lowered)
        if found:
            return found[1], found[0]

    folder_type = _structural(lowered, provider, list(flags))
    if folder_type:
        return folder_type, STRUCTURAL_CONFIDENCE

    folder_type = _stripped_match(lowered)
    if folder_type:
        return folder_type, STRIPPED_CONFIDENCE

    return FolderType.CUSTOM, CUSTOM_CONFIDENCE


def classify_folder(
    name: str,
    provider: Optional[str] = None,
    flags: Iterable[str] = ()
) -> FolderClassification:
    """Detect a folder's type and derive its review and default-enable policy."""
    folder_type, confidence = detect_folder_type(name, provider, flags)
    needs_review = confidence < REVIEW_THRESHOLD or folder_type == FolderType.CUSTOM

    if folder_type in ALWAYS_ENABLED:
        enabled = True
    elif folder_type in ALWAYS_DISABLED:
        enabled = False
    else:
        enabled = not needs_review

    return FolderClassification(
        folder_type=folder_type,
        confidence=confidence,
        needs_review=needs_review,
        sync_enabled=enabled,
    )


def category_for_folder(folder_type) -> str:
    """Deterministic message category for the folder fast path."""
    try:
        folder_type = FolderType(folder_type)
    except ValueError:
        return DEFAULT_CATEGORY
    return FOLDER_CATEGORIES.get(folder_type, DEFAULT_CATEGORY)


def is_system_folder(folder_type) -> bool:
    return FolderType(folder_type) != FolderType.CUSTOM


def is_critical_folder(folder_type) -> bool:
    return FolderType(folder_type) in CRITICAL_FOLDERS


def default_display_name(folder_type, raw_name: str = "", delimiter: Optional[str] = None) -> str:
    """
    Human name for a folder; custom folders keep their own leaf name.

    ``delimiter`` is the hierarchy separator the provider reported. Without
    one the raw name is kept whole.
    """
    folder_type = FolderType(folder_type)
    if folder_type == FolderType.CUSTOM:
        leaf = raw_name.rsplit(delimiter, 1)[-1] if raw_name and delimiter else raw_name
        return leaf.strip() or raw_name
    return DISPLAY_NAMES[folder_type]


def folder_sort_order(folder_type) -> int:
    return SORT_ORDER.get(FolderType(folder_type), SORT_ORDER[FolderType.CUSTOM])


def validate_folder_structure(folder_types: Iterable) -> Dict[str, object]:
    """
    Check that an account exposes the critical folders.

    A missing inbox makes the structure invalid; other missing critical
    folders are reported but tolerated.
    """
    present = {FolderType(t) for t in folder_types}
    missing = [t.value for t in CRITICAL_FOLDERS if t not in present]
    return {
        "valid": FolderType.INBOX in present,
        "missing": missing,
    }
