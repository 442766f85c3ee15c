"""X11 keysyms and the host key table that maps onto them.

RFB key events carry keysyms, not scancodes, so every host key has to be
translated here before it reaches ``RfbSession.send_key``.
"""

from __future__ import annotations

import string
from typing import Dict, List, Tuple

XK_BackSpace = 0xFF08
XK_Tab = 0xFF09
XK_Return = 0xFF0D
XK_Escape = 0xFF1B
XK_Delete = 0xFFFF
XK_Home = 0xFF50
XK_Left = 0xFF51
XK_Up = 0xFF52
XK_Right = 0xFF53
XK_Down = 0xFF54
XK_Page_Up = 0xFF55
XK_Page_Down = 0xFF56
XK_End = 0xFF57
XK_Insert = 0xFF63
XK_F1 = 0xFFBE
XK_Shift_L = 0xFFE1
XK_Shift_R = 0xFFE2
XK_Control_L = 0xFFE3
XK_Control_R = 0xFFE4
XK_Caps_Lock = 0xFFE5
XK_Alt_L = 0xFFE9
XK_Alt_R = 0xFFEA
XK_Super_L = 0xFFEB

XK_space = 0x0020

# Latin-1 keysyms equal their code point; everything else lives at 0x01000000 + code point.
_UNICODE_KEYSYM_BASE = 0x01000000

# (unshifted, shifted) glyph pairs on a US layout
_SHIFT_PAIRS = (
    ("`", "~"),
    ("1", "!"),
    ("2", "@"),
    ("3", "#"),
    ("4", "$"),
    ("5", "%"),
    ("6", "^"),
    ("7", "&"),
    ("8", "*"),
    ("9", "("),
    ("0", ")"),
    ("-", "_"),
    ("=", "+"),
    ("[", "{"),
    ("]", "}"),
    ("\\", "|"),
    (";", ":"),
    ("'", '"'),
    (",", "<"),
    (".", ">"),
    ("/", "?"),
)

_PUNCTUATION_NAMES = {
    "`": "grave",
    "-": "minus",
    "=": "equal",
    "[": "bracketleft",
    "]": "bracketright",
    "\\": "backslash",
    ";": "semicolon",
    "'": "apostrophe",
    ",": "comma",
    ".": "period",
    "/": "slash",
}

_SPECIAL_KEYS = {
    "backspace": XK_BackSpace,
    "tab": XK_Tab,
    "enter": XK_Return,
    "return": XK_Return,
    "escape": XK_Escape,
    "esc": XK_Escape,
    "delete": XK_Delete,
    "insert": XK_Insert,
    "home": XK_Home,
    "end": XK_End,
    "page_up": XK_Page_Up,
    "page_down": XK_Page_Down,
    "left": XK_Left,
    "up": XK_Up,
    "right": XK_Right,
    "down": XK_Down,
    "space": XK_space,
    "shift": XK_Shift_L,
    "shift_l": XK_Shift_L,
    "shift_r": XK_Shift_R,
    "ctrl": XK_Control_L,
    "ctrl_l": XK_Control_L,
    "ctrl_r": XK_Control_R,
    "alt": XK_Alt_L,
    "alt_l": XK_Alt_L,
    "alt_r": XK_Alt_R,
    "caps_lock": XK_Caps_Lock,
    "super": XK_Super_L,
}


def _build_host_keys() -> Dict[str, Tuple[int, int]]:
    keys: Dict[str, Tuple[int, int]] = {}
    for letter in string.ascii_lowercase:
        keys[letter] = (ord(letter), ord(letter.upper()))
    for plain, shifted in _SHIFT_PAIRS:
        keys[plain] = (ord(plain), ord(shifted))
        if plain in _PUNCTUATION_NAMES:
            keys[_PUNCTUATION_NAMES[plain]] = (ord(plain), ord(shifted))
    for name, keysym in _SPECIAL_KEYS.items():
        keys[name] = (keysym, keysym)
    for number in range(1, 13):
        keysym = XK_F1 + number - 1
        keys[f"f{number}"] = (keysym, keysym)
    return keys


HOST_KEYS: Dict[str, Tuple[int, int]] = _build_host_keys()

MODIFIERS = {"shift": XK_Shift_L, "ctrl": XK_Control_L, "alt": XK_Alt_L, "super": XK_Super_L}


def key_to_keysym(key: str, shift: bool = False) -> int:
    """Translate a host key identifier (``"a"``, ``"enter"``, ``"f5"``, ``";"``) to a keysym.

    Raises KeyError for identifiers outside the table.
    """
    name = key if len(key) == 1 else key.lower()
    if len(name) == 1 and name.isupper():
        name = name.lower()
        shift = True
    plain, shifted = HOST_KEYS[name]
    return shifted if shift else plain


def char_to_keysym(char: str) -> int:
    if len(char) != 1:
        raise ValueError(f"expected a single character, got {char!r}")
    if char == "\n" or char == "\r":
        return XK_Return
    if char == "\t":
        return XK_Tab
    if char == "\b":
        return XK_BackSpace
    code = ord(char)
    if 0x20 <= code <= 0x7E or 0xA0 <= code <= 0xFF:
        return code
    return _UNICODE_KEYSYM_BASE + code


def text_to_keysyms(text: str) -> List[int]:
    return [char_to_keysym(c) for c in text]


def parse_combo(combo: str) -> List[int]:
    """``"ctrl+alt+delete"`` -> keysyms in press order."""
    parts = [p for p in combo.split("+") if p]
    if not parts:
        raise KeyError(combo)
    keysyms = [MODIFIERS[p.lower()] if p.lower() in MODIFIERS else key_to_keysym(p) for p in parts[:-1]]
    keysyms.append(key_to_keysym(parts[-1]))
    return keysyms
