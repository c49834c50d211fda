"""Minimal DNS wire-format codec for single-question A queries.

Only the first question of a message is looked at. Responses are built from
exactly-sized parts: header, the query's question section copied verbatim and
an optional 16-byte A record that points back at the question name.
"""

import ipaddress
import struct
from typing import NamedTuple, Optional, Tuple

HEADER_LEN = 12
ANSWER_LEN = 16

TYPE_A = 1
CLASS_IN = 1
ANSWER_TTL = 60

# QR=1, RD=1, RA=1, RCODE=NOERROR
RESPONSE_FLAGS = 0x8180
# compression pointer to the question name at offset 12
NAME_POINTER = 0xC00C

NULL_ADDRESS = '0.0.0.0'


class WireFormatError(ValueError):
    """Raised when a response cannot be built from the given query/address."""


class Question(NamedTuple):
    name: str
    qtype: int
    qclass: int
    end: int


def _walk_name(message: bytes, offset: int = HEADER_LEN) -> Optional[Tuple[str, int]]:
    """Read an uncompressed name starting at offset.

    Returns (name, offset past the terminating zero) or None when the name is
    truncated or uses a label type other than a plain length byte.
    """
    labels = []
    length = len(message)
    while True:
        if offset >= length:
            return None
        l = message[offset]
        if l == 0:
            return '.'.join(labels), offset + 1
        if l & 0xC0:
            # pointers and extended label types are not expected in a question
            return None
        if offset + 1 + l > length:
            return None
        labels.append(message[offset + 1:offset + 1 + l].decode('utf-8', errors='replace'))
        offset += 1 + l


def decode_question_name(message: bytes) -> Optional[str]:
    """Return the first question's name, or None if the message is malformed."""
    if not message or len(message) < HEADER_LEN:
        return None
    walked = _walk_name(message)
    if walked is None:
        return None
    return walked[0]


def question_section_end(message: bytes) -> Optional[int]:
    """Offset one past QCLASS of the first question, or None."""
    question = parse_question(message)
    return question.end if question is not None else None


def parse_question(message: bytes) -> Optional[Question]:
    """Name, QTYPE, QCLASS and end offset of the first question, or None."""
    if not message or len(message) < HEADER_LEN:
        return None
    walked = _walk_name(message)
    if walked is None:
        return None
    name, offset = walked
    end = offset + 4
    if end > len(message):
        return None
    qtype, qclass = struct.unpack('>HH', message[offset:end])
    return Question(name, qtype, qclass, end)


def _address_octets(address: str) -> bytes:
    try:
        return ipaddress.IPv4Address(address).packed
    except (ipaddress.AddressValueError, TypeError) as e:
        raise WireFormatError(f"not an IPv4 address: {address!r}") from e


def encode_response(query: bytes, address: Optional[str] = None) -> bytes:
    """Build a response to query, with an A answer for address if given.

    The result is exactly 12 + len(question) + (16 if address else 0) bytes.
    """
    end = question_section_end(query)
    if end is None:
        raise WireFormatError("query has no well-formed question section")
    rdata = _address_octets(address) if address is not None else None

    header = bytes(query[0:2]) + struct.pack(
        '>HHHHH', RESPONSE_FLAGS, 1, 1 if rdata is not None else 0, 0, 0)
    question = bytes(query[HEADER_LEN:end])
    if rdata is None:
        return header + question
    answer = struct.pack('>HHHIH', NAME_POINTER, TYPE_A, CLASS_IN, ANSWER_TTL, len(rdata)) + rdata
    return header + question + answer
