"""DNS message helpers shared by the resolver, exchange engines and front end.

Brief:
  Thin glue over dnslib: derive the cache key for a query, rewrite the
  transaction ID on wire bytes, and build SERVFAIL replies.
"""

from __future__ import annotations

from typing import NamedTuple

from dnslib import CLASS, QTYPE, RCODE, DNSError, DNSRecord
from dnslib.bimap import BimapError


# A DNS header is 12 bytes; anything shorter cannot carry a question.
DNS_HEADER_LEN = 12


class MalformedQueryError(ValueError):
    """
    Brief: Incoming datagram cannot be turned into a usable query.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class ResolutionKey(NamedTuple):
    """Cache key derived from a question's name, type and class."""

    qname: str
    qtype: str
    qclass: str

    def __str__(self) -> str:
        return f"{self.qname} {self.qtype} {self.qclass}"


def _type_name(qtype: int) -> str:
    try:
        return str(QTYPE[qtype])
    except (DNSError, BimapError):
        return f"TYPE{int(qtype)}"


def _class_name(qclass: int) -> str:
    try:
        return str(CLASS[qclass])
    except (DNSError, BimapError):
        return f"CLASS{int(qclass)}"


def resolution_key(record: DNSRecord, *, case_insensitive: bool = False) -> ResolutionKey:
    """Brief: Derive the ResolutionKey for a parsed query.

    Inputs:
      - record: DNSRecord with at least one question.
      - case_insensitive: lowercase the name before keying (off by default,
        so ``Example.com`` and ``example.com`` are cached separately).

    Outputs:
      - ResolutionKey: (qname, qtype, qclass) canonical strings; never
        includes the transaction ID.

    Example:
      >>> q = DNSRecord.question("example.com", "A")
      >>> resolution_key(q)
      ResolutionKey(qname='example.com.', qtype='A', qclass='IN')
    """
    if not record.questions:
        raise MalformedQueryError("query carries no question")
    q = record.q
    name = str(q.qname)
    if case_insensitive:
        name = name.lower()
    return ResolutionKey(name, _type_name(q.qtype), _class_name(q.qclass))


def parse_query(data: bytes) -> DNSRecord:
    """Brief: Parse an inbound datagram into a DNSRecord query.

    Inputs:
      - data: raw datagram bytes from a client.

    Outputs:
      - DNSRecord

    Raises:
      - MalformedQueryError: datagram shorter than a DNS header, not parseable
        by dnslib, or without a question.
    """
    if len(data) < DNS_HEADER_LEN:
        raise MalformedQueryError(f"datagram too short ({len(data)} bytes)")
    try:
        record = DNSRecord.parse(data)
    except (DNSError, ValueError, IndexError) as e:
        raise MalformedQueryError(f"unparseable query: {e}") from e
    if not record.questions:
        raise MalformedQueryError("query carries no question")
    return record


def read_id(wire: bytes) -> int:
    """Return the 16-bit transaction ID from the first two bytes of ``wire``."""
    if len(wire) < 2:
        raise ValueError("wire too short to carry a transaction ID")
    return (wire[0] << 8) | wire[1]


def set_response_id(wire: bytes, req_id: int) -> bytes:
    """Return a copy of ``wire`` with the DNS ID replaced by ``req_id``.

    Inputs:
      - wire: bytes-like DNS message.
      - req_id: int transaction ID to write into the first two bytes.
    Outputs:
      - bytes: new object; the input is never mutated, so cached entries can
        be shared between clients.
    """
    bwire = bytes(wire)
    if len(bwire) < 2:
        return bwire
    hi = (int(req_id) >> 8) & 0xFF
    lo = int(req_id) & 0xFF
    return bytes([hi, lo]) + bwire[2:]


def make_servfail_response(request: DNSRecord) -> bytes:
    """
    Create SERVFAIL response for the given request.

    Inputs:
        - request (DNSRecord): Original DNS request.

    Outputs:
        - response_wire (bytes): SERVFAIL response wire data.
    """
    r = request.reply()
    r.header.rcode = RCODE.SERVFAIL
    return set_response_id(r.pack(), request.header.id)
