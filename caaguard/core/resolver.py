from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import dns.flags
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype

from .cache import TTLCache
from .utils import QueryMeta, now_ms

logger = logging.getLogger(__name__)


@dataclass
class Answer:
    qname: str
    qtype: str
    ttl: Optional[int]
    meta: QueryMeta
    # answer section rdata text keyed by rdtype; a CAA lookup may also carry CNAMEs
    by_type: Dict[str, List[str]] = field(default_factory=dict)

    def rdata(self, rdtype: Optional[str] = None) -> List[str]:
        return list(self.by_type.get((rdtype or self.qtype).upper(), []))


class DNSResolver:
    """Stub resolver that asks one recursive server per query.

    UDP is tried ``tries`` times, then TCP (also used straight away when the
    UDP answer is truncated). Only positive NOERROR answers are cached.
    """

    def __init__(
        self,
        timeout: float = 2.0,
        tries: int = 2,
        udp_payload: int = 1232,
        cache: Optional[TTLCache] = None,
    ):
        self.timeout = timeout
        self.tries = max(1, tries)
        self.udp_payload = udp_payload
        self.cache = cache if cache is not None else TTLCache()

    def query(self, qname: str, server: str, qtype: str = "CAA") -> Answer:
        qtype = qtype.upper()
        key = (server, qname.lower().rstrip("."), qtype)
        hit = self.cache.get(key)
        if hit is not None:
            logger.debug("cache hit for %s %s via %s", qname, qtype, server)
            return hit

        msg = dns.message.make_query(qname, qtype, use_edns=True, payload=self.udp_payload)
        ans = self._exchange(msg, qname, qtype, server)
        if ans.ttl is not None and ans.meta.rcode == "NOERROR":
            self.cache.set(key, ans, int(min(max(ans.ttl, 0), 3600)))
        return ans

    def _exchange(self, msg: dns.message.Message, qname: str, qtype: str, server: str) -> Answer:
        last_exc: Optional[Exception] = None
        for attempt in range(self.tries):
            t0 = now_ms()
            try:
                resp = dns.query.udp(msg, server, timeout=self.timeout)
            except Exception as e:
                logger.debug("UDP attempt %d for %s %s via %s failed: %s", attempt + 1, qname, qtype, server, e)
                last_exc = e
                continue
            if resp.flags & dns.flags.TC:
                logger.debug("truncated answer for %s %s via %s, switching to TCP", qname, qtype, server)
                break
            return self._to_answer(qname, qtype, server, resp, tcp=False, elapsed=now_ms() - t0, retries=attempt)

        t0 = now_ms()
        try:
            resp = dns.query.tcp(msg, server, timeout=self.timeout)
        except Exception as e:
            raise e from last_exc
        return self._to_answer(qname, qtype, server, resp, tcp=True, elapsed=now_ms() - t0, retries=self.tries)

    @staticmethod
    def _to_answer(
        qname: str,
        qtype: str,
        server: str,
        resp: dns.message.Message,
        tcp: bool,
        elapsed: int,
        retries: int,
    ) -> Answer:
        by_type: Dict[str, List[str]] = {}
        for rrset in resp.answer:
            by_type.setdefault(dns.rdatatype.to_text(rrset.rdtype), []).extend(rd.to_text() for rd in rrset)

        return Answer(
            qname=qname,
            qtype=qtype,
            ttl=resp.answer[0].ttl if resp.answer else None,
            meta=QueryMeta(
                server=server,
                qname=qname,
                qtype=qtype,
                tcp=tcp,
                rcode=dns.rcode.to_text(resp.rcode()),
                elapsed_ms=elapsed,
                truncated=bool(resp.flags & dns.flags.TC),
                retries=retries,
            ),
            by_type=by_type,
        )
