"""Account identifier parsing.

Accounts are Nostr public keys. They are stored as 64 lowercase hex characters;
the bech32 ``npub1...`` form is accepted on input and converted.
"""
import re


HEX_PUBKEY_RE = re.compile(r"^[0-9a-f]{64}$", re.IGNORECASE)

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_GENERATOR = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
NPUB_HRP = "npub"


class InvalidIdentifier(ValueError):
    """Value is neither a hex public key nor an npub."""

    def __init__(self, value: str):
        self.value = value
        super().__init__("Invalid pubkey format. Must be npub or 64 hex characters.")


def _bech32_polymod(values: list[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i, gen in enumerate(BECH32_GENERATOR):
            if (top >> i) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: list[int], from_bits: int, to_bits: int) -> list[int] | None:
    """Regroup a list of from_bits-wide integers into to_bits-wide ones (no padding)."""
    acc = 0
    bits = 0
    out = []
    max_value = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & max_value)
    if bits >= from_bits or ((acc << (to_bits - bits)) & max_value):
        return None
    return out


def npub_to_hex(npub: str) -> str | None:
    """Decode an npub to hex, or None if it is malformed or fails its checksum."""
    lower = npub.strip().lower()
    hrp, sep, data_part = lower.rpartition("1")
    if not sep or hrp != NPUB_HRP or len(data_part) < 7:
        return None

    values = []
    for char in data_part:
        idx = BECH32_CHARSET.find(char)
        if idx == -1:
            return None
        values.append(idx)

    if _bech32_polymod(_hrp_expand(hrp) + values) != 1:
        return None

    decoded = _convert_bits(values[:-6], 5, 8)
    if decoded is None or len(decoded) != 32:
        return None
    return bytes(decoded).hex()


def normalize_identifier(value: str) -> str:
    """Return the canonical lowercase-hex form of an account identifier.

    Raises InvalidIdentifier for anything that is not hex or a valid npub.
    """
    if not isinstance(value, str):
        raise InvalidIdentifier(repr(value))
    trimmed = value.strip()
    if trimmed.lower().startswith(NPUB_HRP + "1"):
        hex_key = npub_to_hex(trimmed)
        if hex_key is None:
            raise InvalidIdentifier(value)
        return hex_key
    if HEX_PUBKEY_RE.match(trimmed):
        return trimmed.lower()
    raise InvalidIdentifier(value)


def is_valid_identifier(value: str) -> bool:
    try:
        normalize_identifier(value)
    except InvalidIdentifier:
        return False
    return True
