"""Resolution states and the outcomes each state can report."""

from enum import IntEnum


class State(IntEnum):
    """Steps of the iterative resolution state machine."""

    INIT = 0
    CACHE_LOOKUP = 1
    CLASSIFY_RESP = 2
    EXTRACT_GLUE = 3
    LOOKUP_NS_CACHE = 4
    QUERY_UPSTREAM = 5
    RETURN_RESP = 6


class InitResult(IntEnum):
    COMMON_ERROR = -1
    NO_ERROR = 0
    FORMERR = 1


class CacheLookupResult(IntEnum):
    COMMON_ERROR = -1
    HIT = 0
    MISS = 1


class ClassifyResult(IntEnum):
    COMMON_ERROR = -1
    GET_ANS = 0
    GET_CNAME = 1
    GET_NS = 2
    GET_NEGATIVE = 3


class GlueResult(IntEnum):
    COMMON_ERROR = -1
    EXIST = 0
    NOT_EXIST = 1


class NSCacheResult(IntEnum):
    COMMON_ERROR = -1
    HIT = 0
    MISS = 1


class UpstreamResult(IntEnum):
    COMMON_ERROR = -1
    NO_ERROR = 0


class ReturnResult(IntEnum):
    COMMON_ERROR = -1
    NO_ERROR = 0