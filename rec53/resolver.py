"""Iterative resolution driven by a state machine over the step handlers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Callable, Iterable, Union

import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdatatype
import dns.rrset

from rec53.cache import DEFAULT_CACHE, MessageCache
from rec53.handlers import (
    classify_response,
    extract_glue,
    init_request,
    lookup_cache,
    lookup_ns_cache,
)
from rec53.log import logger
from rec53.states import (
    CacheLookupResult,
    ClassifyResult,
    GlueResult,
    InitResult,
    NSCacheResult,
    State,
    UpstreamResult,
)

MAX_ITERATIONS = 50

UpstreamQuery = Callable[[dns.message.Message, dns.message.Message], UpstreamResult]
_Outcome = Union[State, dns.message.Message]


class ResolutionError(Exception):
    """Resolution could not produce a response."""


def _as_name(value: dns.name.Name | str) -> dns.name.Name:
    return value if isinstance(value, dns.name.Name) else dns.name.from_text(value)


def is_ns_relevant_for_cname(
    ns_records: Iterable[dns.rrset.RRset], cname_target: dns.name.Name | str
) -> bool:
    """True when the first NS set's zone is the CNAME target or one of its ancestors."""
    records = list(ns_records)
    if not records:
        return False
    return _as_name(cname_target).is_subdomain(records[0].name)


def follow_cname(
    request: dns.message.Message,
    response: dns.message.Message,
    chain: list[dns.rrset.RRset],
    visited: set[dns.name.Name],
) -> dns.name.Name | None:
    """Redirect the request to the first CNAME target in the response's answers.

    The CNAME record is appended to chain, delegation data unrelated to the
    target is dropped and the answer section is cleared. Returns the target,
    or None when there is no CNAME. Raises ResolutionError on a cycle.
    """
    cname = next(
        (rrset for rrset in response.answer if rrset.rdtype == dns.rdatatype.CNAME and len(rrset)),
        None,
    )
    if cname is None:
        return None
    target = cname[0].target
    if target in visited:
        logger.error("CNAME cycle detected: %s", target)
        raise ResolutionError(f"CNAME cycle detected: {target}")
    visited.add(target)

    record = dns.rrset.RRset(cname.name, cname.rdclass, dns.rdatatype.CNAME)
    record.add(copy.deepcopy(cname[0]), cname.ttl)
    chain.append(record)
    logger.debug("CNAME chain: added %s -> %s", cname.name, target)

    if is_ns_relevant_for_cname(response.authority, target):
        logger.debug("Preserving NS/Extra for CNAME target %s (NS zone matches)", target)
    else:
        logger.debug("Clearing stale NS/Extra for CNAME target %s (NS zone mismatch)", target)
        response.authority = []
        response.additional = []

    response.answer = []
    question = request.question[0]
    request.question[0] = dns.rrset.RRset(target, question.rdclass, question.rdtype)
    return target


def build_final_response(
    response: dns.message.Message,
    original_question: dns.rrset.RRset | None,
    chain: Iterable[dns.rrset.RRset],
) -> dns.message.Message:
    """Restore the original question and put the CNAME chain before the answers."""
    if original_question is not None:
        if response.question:
            response.question[0] = original_question
        else:
            response.question = [original_question]
    chain = list(chain)
    if chain:
        response.answer = [*chain, *response.answer]
        logger.debug("Prepended %d CNAME records to answer section", len(chain))
    return response


def _servfail(request: dns.message.Message) -> dns.message.Message:
    reply = dns.message.Message(id=request.id)
    reply.flags = dns.flags.QR | (request.flags & (dns.flags.RD | dns.flags.CD))
    reply.set_opcode(request.opcode())
    reply.set_rcode(dns.rcode.SERVFAIL)
    reply.question = [
        dns.rrset.RRset(q.name, q.rdclass, q.rdtype) for q in request.question[:1]
    ]
    return reply


@dataclass
class _Walk:
    request: dns.message.Message
    response: dns.message.Message
    original_question: dns.rrset.RRset | None
    chain: list[dns.rrset.RRset] = field(default_factory=list)
    visited: set[dns.name.Name] = field(default_factory=set)


class Resolver:
    """Runs the resolution states until a response is ready.

    query_upstream performs the QUERY_UPSTREAM step: it sends the request to
    the servers delegated in the response and fills the response in place.
    """

    def __init__(
        self,
        cache: MessageCache | None = None,
        root_glue: dns.message.Message | None = None,
        query_upstream: UpstreamQuery | None = None,
        max_iterations: int = MAX_ITERATIONS,
    ) -> None:
        self.cache = cache if cache is not None else DEFAULT_CACHE
        self.root_glue = root_glue if root_glue is not None else dns.message.Message()
        self.query_upstream = query_upstream
        self.max_iterations = max_iterations
        self._steps: dict[State, Callable[[_Walk], _Outcome]] = {
            State.INIT: self._init,
            State.CACHE_LOOKUP: self._cache_lookup,
            State.CLASSIFY_RESP: self._classify,
            State.EXTRACT_GLUE: self._extract_glue,
            State.LOOKUP_NS_CACHE: self._lookup_ns_cache,
            State.QUERY_UPSTREAM: self._query_upstream,
            State.RETURN_RESP: self._return_response,
        }

    def resolve(
        self,
        request: dns.message.Message,
        response: dns.message.Message,
        start: State = State.INIT,
    ) -> dns.message.Message:
        """Resolve request into response, starting at the given state."""
        if request is None:
            raise ResolutionError("request is required")
        try:
            state = State(start)
        except ValueError as exc:
            raise ResolutionError(f"wrong state {start}") from exc
        original = copy.deepcopy(request.question[0]) if request.question else None
        walk = _Walk(request, response, original)

        for iteration in range(1, self.max_iterations + 1):
            query_name = request.question[0].name.to_text() if request.question else ""
            logger.debug(
                "[STATE_MACHINE] Iteration %d, current state: %s, query: %s",
                iteration,
                state.name,
                query_name,
            )
            outcome = self._steps[state](walk)
            if isinstance(outcome, dns.message.Message):
                return outcome
            state = outcome

        logger.error("Max iterations (%d) exceeded, possible CNAME loop", self.max_iterations)
        raise ResolutionError("max iterations exceeded, possible CNAME loop")

    @staticmethod
    def _call(state: State, handler: Callable, *args: object):
        try:
            return handler(*args)
        except ResolutionError:
            raise
        except Exception as exc:
            logger.error("handle state error %s %s", state.name, exc)
            raise ResolutionError(f"handle state error {state.name} {exc}") from exc

    @staticmethod
    def _wrong(state: State, result: object) -> ResolutionError:
        logger.error("Wrong state %s %s", state.name, result)
        return ResolutionError(f"wrong state {state.name} {result}")

    def _init(self, walk: _Walk) -> _Outcome:
        result = self._call(State.INIT, init_request, walk.request, walk.response)
        if result == InitResult.FORMERR:
            return walk.response
        if result == InitResult.NO_ERROR:
            return State.CACHE_LOOKUP
        raise self._wrong(State.INIT, result)

    def _cache_lookup(self, walk: _Walk) -> _Outcome:
        result = self._call(
            State.CACHE_LOOKUP, lookup_cache, walk.request, walk.response, self.cache
        )
        if result == CacheLookupResult.HIT:
            return State.CLASSIFY_RESP
        if result == CacheLookupResult.MISS:
            return State.EXTRACT_GLUE
        raise self._wrong(State.CACHE_LOOKUP, result)

    def _classify(self, walk: _Walk) -> _Outcome:
        result = self._call(
            State.CLASSIFY_RESP, classify_response, walk.request, walk.response, self.cache
        )
        if result == ClassifyResult.COMMON_ERROR:
            return walk.response
        if result in (ClassifyResult.GET_ANS, ClassifyResult.GET_NEGATIVE):
            return State.RETURN_RESP
        if result == ClassifyResult.GET_CNAME:
            follow_cname(walk.request, walk.response, walk.chain, walk.visited)
            return State.CACHE_LOOKUP
        if result == ClassifyResult.GET_NS:
            return State.EXTRACT_GLUE
        raise self._wrong(State.CLASSIFY_RESP, result)

    def _extract_glue(self, walk: _Walk) -> _Outcome:
        result = self._call(State.EXTRACT_GLUE, extract_glue, walk.request, walk.response)
        if result == GlueResult.EXIST:
            return State.QUERY_UPSTREAM
        if result == GlueResult.NOT_EXIST:
            return State.LOOKUP_NS_CACHE
        raise self._wrong(State.EXTRACT_GLUE, result)

    def _lookup_ns_cache(self, walk: _Walk) -> _Outcome:
        result = self._call(
            State.LOOKUP_NS_CACHE,
            lookup_ns_cache,
            walk.request,
            walk.response,
            self.cache,
            self.root_glue,
        )
        if result in (NSCacheResult.HIT, NSCacheResult.MISS):
            return State.QUERY_UPSTREAM
        raise self._wrong(State.LOOKUP_NS_CACHE, result)

    def _query_upstream(self, walk: _Walk) -> _Outcome:
        if self.query_upstream is None:
            raise ResolutionError("no upstream query handler configured")
        raw = self._call(State.QUERY_UPSTREAM, self.query_upstream, walk.request, walk.response)
        try:
            result = UpstreamResult(raw)
        except ValueError:
            raise self._wrong(State.QUERY_UPSTREAM, raw) from None
        if result == UpstreamResult.COMMON_ERROR:
            return _servfail(walk.request)
        return State.CLASSIFY_RESP

    def _return_response(self, walk: _Walk) -> _Outcome:
        if walk.response is None:
            logger.error("handle state error RETURN_RESP response is missing")
            raise ResolutionError("handle state error RETURN_RESP response is missing")
        return build_final_response(walk.response, walk.original_question, walk.chain)