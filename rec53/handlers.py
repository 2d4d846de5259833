"""Handlers for the individual steps of iterative resolution.

Each handler inspects the request and mutates the response in place, then
reports the outcome as one of the result enums from :mod:`rec53.states`.
A missing request or response raises ValueError.
"""

from __future__ import annotations

import copy
from typing import Iterator

import dns.flags
import dns.message
import dns.name
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from rec53.cache import DEFAULT_CACHE, MessageCache
from rec53.log import logger
from rec53.states import (
    CacheLookupResult,
    ClassifyResult,
    GlueResult,
    InitResult,
    NSCacheResult,
)


def _require(request: dns.message.Message | None, response: dns.message.Message | None) -> None:
    if request is None or response is None:
        raise ValueError("request and response are both required")


def _set_reply(response: dns.message.Message, request: dns.message.Message) -> None:
    """Turn response into an empty NOERROR reply to request."""
    response.id = request.id
    opcode = request.opcode()
    flags = dns.flags.QR
    if opcode == dns.opcode.QUERY:
        flags |= request.flags & (dns.flags.RD | dns.flags.CD)
    response.flags = flags
    response.set_opcode(opcode)
    response.set_rcode(dns.rcode.NOERROR)
    response.question = [
        dns.rrset.RRset(q.name, q.rdclass, q.rdtype) for q in request.question[:1]
    ]


def _set_rcode(response: dns.message.Message, request: dns.message.Message, rcode: int) -> None:
    _set_reply(response, request)
    response.set_rcode(rcode)


def _qtype_text(qtype: int) -> str:
    return dns.rdatatype.to_text(qtype)


def init_request(
    request: dns.message.Message | None, response: dns.message.Message | None
) -> InitResult:
    """Validate the request and prepare response as its reply.

    A request that does not hold exactly one question, has QR set or is not a
    standard query gets a FORMERR reply.
    """
    _require(request, response)
    if (
        len(request.question) != 1
        or request.flags & dns.flags.QR
        or request.opcode() != dns.opcode.QUERY
    ):
        logger.debug(
            "[STATE_INIT] FORMERR: qdcount=%d qr=%s opcode=%d",
            len(request.question),
            bool(request.flags & dns.flags.QR),
            request.opcode(),
        )
        _set_rcode(response, request, dns.rcode.FORMERR)
        return InitResult.FORMERR
    _set_reply(response, request)
    return InitResult.NO_ERROR


def lookup_cache(
    request: dns.message.Message | None,
    response: dns.message.Message | None,
    cache: MessageCache | None = None,
) -> CacheLookupResult:
    """Copy cached answers for the question's name and type into response."""
    _require(request, response)
    cache = cache if cache is not None else DEFAULT_CACHE
    question = request.question[0]
    name = question.name.to_text()
    logger.debug("try to get cache %s (type: %s)", name, _qtype_text(question.rdtype))
    cached = cache.get_by_type(name, question.rdtype)
    if cached is not None and cached.answer:
        logger.debug("get cache %s (type: %s)", name, _qtype_text(question.rdtype))
        response.answer.extend(cached.answer)
        return CacheLookupResult.HIT
    return CacheLookupResult.MISS


def _soa_from_authority(
    response: dns.message.Message,
) -> tuple[dns.rrset.RRset, int] | None:
    """Return the first SOA set in the authority section and its negative TTL."""
    for rrset in response.authority:
        if rrset.rdtype == dns.rdatatype.SOA and len(rrset):
            return rrset, min(rrset.ttl, rrset[0].minimum)
    return None


def classify_response(
    request: dns.message.Message | None,
    response: dns.message.Message | None,
    cache: MessageCache | None = None,
) -> ClassifyResult:
    """Decide whether response answers the question, redirects, or needs delegation.

    Negative answers (NXDOMAIN or NODATA with an SOA) are cached under the
    question's name and type.
    """
    _require(request, response)
    cache = cache if cache is not None else DEFAULT_CACHE
    question = request.question[0]
    qtype = question.rdtype
    qname = question.name.to_text()
    rcode = response.rcode()
    logger.debug(
        "[CHECK_RESP] Checking response for %s (type: %s), Rcode: %s, Answers: %d, Ns: %d, Extra: %d",
        qname,
        _qtype_text(qtype),
        dns.rcode.to_text(rcode),
        len(response.answer),
        len(response.authority),
        len(response.additional),
    )

    if not response.answer:
        soa = _soa_from_authority(response)
        if soa is not None and rcode in (dns.rcode.NXDOMAIN, dns.rcode.NOERROR):
            _, ttl = soa
            kind = "NXDOMAIN" if rcode == dns.rcode.NXDOMAIN else "NODATA"
            cache.set_by_type(qname, qtype, response, ttl)
            logger.debug(
                "[CHECK_RESP] Cached %s for %s (type: %s) with TTL: %d",
                kind,
                qname,
                _qtype_text(qtype),
                ttl,
            )
            return ClassifyResult.GET_NEGATIVE
        logger.debug("[CHECK_RESP] No answers (and no SOA), continuing to delegation")
        return ClassifyResult.GET_NS

    if any(rrset.rdtype == qtype for rrset in response.answer):
        logger.debug("[CHECK_RESP] Found matching type %s, returning answer", _qtype_text(qtype))
        return ClassifyResult.GET_ANS

    if qtype != dns.rdatatype.CNAME:
        for rrset in response.answer:
            if rrset.rdtype == dns.rdatatype.CNAME and len(rrset):
                logger.debug(
                    "[CHECK_RESP] Found CNAME: %s -> %s", rrset.name, rrset[0].target
                )
                return ClassifyResult.GET_CNAME

    logger.debug(
        "[CHECK_RESP] No matching type %s in answers, continuing to delegation",
        _qtype_text(qtype),
    )
    return ClassifyResult.GET_NS


def extract_glue(
    request: dns.message.Message | None, response: dns.message.Message | None
) -> GlueResult:
    """Keep an NS delegation that covers the question; otherwise clear stale data."""
    _require(request, response)
    if response.authority:
        first = response.authority[0]
        if first.rdtype == dns.rdatatype.NS:
            query_name = request.question[0].name
            if query_name.is_subdomain(first.name):
                return GlueResult.EXIST
        response.authority = []
        response.additional = []
    return GlueResult.NOT_EXIST


def _zone_chain(name: dns.name.Name) -> Iterator[str]:
    """Yield name and each of its ancestors, most specific first."""
    while name.labels:
        yield name.to_text()
        if name == dns.name.root:
            return
        name = name.parent()


def lookup_ns_cache(
    request: dns.message.Message | None,
    response: dns.message.Message | None,
    cache: MessageCache | None,
    root_glue: dns.message.Message,
) -> NSCacheResult:
    """Add the closest cached NS delegation to response, or the root glue."""
    _require(request, response)
    cache = cache if cache is not None else DEFAULT_CACHE
    for zone in _zone_chain(request.question[0].name):
        cached = cache.get(zone)
        if cached is None:
            continue
        logger.debug("get cache: %s in lookup_ns_cache", zone)
        if cached.authority and cached.authority[0].rdtype == dns.rdatatype.NS:
            response.authority.extend(cached.authority)
            response.additional.extend(cached.additional)
            return NSCacheResult.HIT
    response.authority.extend(copy.deepcopy(root_glue.authority))
    response.additional.extend(copy.deepcopy(root_glue.additional))
    return NSCacheResult.MISS