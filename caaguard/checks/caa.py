from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import dns.rdata
import dns.rdataclass
import dns.rdatatype

from ..core.resolver import DNSResolver
from ..core.utils import parent_name

logger = logging.getLogger(__name__)

DEFAULT_CA_IDENTIFIERS = ("letsencrypt.org",)

# NXDOMAIN is an empty answer for CAA purposes, not a failure
_EMPTY_OK_RCODES = ("NOERROR", "NXDOMAIN")


class CAAResolutionError(Exception):
    """The server answered, but with an rcode that tells us nothing (SERVFAIL, REFUSED...)."""

    def __init__(self, domain: str, rcode: str):
        super().__init__(f"CAA lookup for {domain} failed with {rcode}")
        self.domain = domain
        self.rcode = rcode


@dataclass(frozen=True)
class CAARecord:
    flags: int
    tag: str
    value: str

    @classmethod
    def from_text(cls, text: str) -> "CAARecord":
        """Parse presentation format, e.g. ``0 issue "letsencrypt.org"``."""
        rd = dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.CAA, text)
        return cls(
            flags=int(rd.flags),
            tag=rd.tag.decode("ascii", errors="replace"),
            value=rd.value.decode("utf-8", errors="replace"),
        )

    @property
    def issuer(self) -> str:
        # issuer-domain-name; parameters after ';' are ignored
        return self.value.split(";", 1)[0].strip().lower()

    @property
    def parameters(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for part in self.value.split(";")[1:]:
            k, sep, v = part.partition("=")
            if sep and k.strip():
                params[k.strip()] = v.strip()
        return params

    def to_text(self) -> str:
        return f'{self.flags} {self.tag} "{self.value}"'


class CAAQuerier(Protocol):
    def query(self, domain: str) -> List[CAARecord]:
        ...


@dataclass
class CAAResolution:
    """Outcome of a single CAA query: records on success, the exception on failure."""

    records: List[CAARecord] = field(default_factory=list)
    error: Optional[Exception] = None

    @classmethod
    def success(cls, records: Sequence[CAARecord]) -> "CAAResolution":
        return cls(records=list(records))

    @classmethod
    def failure(cls, error: Exception) -> "CAAResolution":
        return cls(records=[], error=error)

    @property
    def ok(self) -> bool:
        return self.error is None


class CAAStatus(str, enum.Enum):
    ALLOWED = "allowed"
    DISALLOWED = "disallowed"
    ERROR = "error"


class CAAEvaluator:
    """Evaluates the CAA policy published at one domain name.

    The resolver is queried lazily, once per instance; the outcome is cached
    for the lifetime of the evaluator. Resolution failures never escape the
    predicates: they are exposed through ``errored()`` / ``error()``.

    Instances are not meant to be shared between threads.
    """

    def __init__(
        self,
        domain: str,
        resolver: CAAQuerier,
        ca_identifiers: Sequence[str] = DEFAULT_CA_IDENTIFIERS,
    ):
        self.domain = domain
        self.resolver = resolver
        self.ca_identifiers = tuple(x.strip().lower() for x in ca_identifiers)
        self._resolution: Optional[CAAResolution] = None
        self._parent: Optional["CAAEvaluator"] = None
        self._relevant: Optional["CAAEvaluator"] = None

    def _spawn(self, domain: str) -> "CAAEvaluator":
        return CAAEvaluator(domain, self.resolver, ca_identifiers=self.ca_identifiers)

    def resolution(self) -> CAAResolution:
        if self._resolution is None:
            logger.debug("querying CAA for %s", self.domain)
            try:
                self._resolution = CAAResolution.success(self.resolver.query(self.domain))
            except Exception as e:
                logger.warning("CAA lookup for %s failed: %s", self.domain, e)
                self._resolution = CAAResolution.failure(e)
        return self._resolution

    def records(self) -> List[CAARecord]:
        return self.resolution().records

    def records_present(self) -> bool:
        return len(self.records()) > 0

    def errored(self) -> bool:
        return not self.resolution().ok

    def error(self) -> Optional[Exception]:
        return self.resolution().error

    def _authorizes(self, record: CAARecord) -> bool:
        return record.issuer in self.ca_identifiers

    def _tagged(self, tag: str) -> List[CAARecord]:
        return [r for r in self.records() if r.tag.lower() == tag]

    def lets_encrypt_allowed(self) -> bool:
        """Standard (non-wildcard) issuance, judged on this name's records only.

        Only issue records restrict it: a set holding just iodef or issuewild
        records leaves standard issuance open.
        """
        if self.errored():
            return False
        issue = self._tagged("issue")
        if not issue:
            return True
        return any(self._authorizes(r) for r in issue)

    def lets_encrypt_wildcard_allowed(self) -> bool:
        """Wildcard issuance: issuewild records win when present, else issue applies."""
        if self.errored():
            return False
        wild = self._tagged("issuewild")
        if not wild:
            return self.lets_encrypt_allowed()
        return any(self._authorizes(r) for r in wild)

    def parent_domain(self) -> Optional[str]:
        return parent_name(self.domain)

    def parent_evaluator(self) -> Optional["CAAEvaluator"]:
        if self._parent is None:
            parent = self.parent_domain()
            if parent is not None:
                self._parent = self._spawn(parent)
        return self._parent

    def parent_domain_allows_lets_encrypt(self) -> bool:
        """Check the immediate parent's own records (one hop, no further climbing)."""
        parent = self.parent_evaluator()
        if parent is None:
            return True
        return parent.lets_encrypt_allowed()

    def relevant_evaluator(self) -> "CAAEvaluator":
        """Closest evaluator, starting here and climbing, that has records or failed.

        Falls back to the last name tried when no ancestor publishes CAA.
        """
        if self._relevant is not None:
            return self._relevant
        current: CAAEvaluator = self
        while not current.records_present() and not current.errored():
            parent = current.parent_evaluator()
            if parent is None:
                break
            current = parent
        self._relevant = current
        return current

    def tree_allows_lets_encrypt(self) -> bool:
        return self.relevant_evaluator().lets_encrypt_allowed()

    def status(self) -> CAAStatus:
        relevant = self.relevant_evaluator()
        if relevant.errored():
            return CAAStatus.ERROR
        if relevant.lets_encrypt_allowed():
            return CAAStatus.ALLOWED
        return CAAStatus.DISALLOWED


class DNSResolverCAAQuerier:
    """Adapts DNSResolver to the ``query(domain) -> [CAARecord]`` capability."""

    def __init__(self, resolver: DNSResolver, server: str):
        self.resolver = resolver
        self.server = server

    def query(self, domain: str) -> List[CAARecord]:
        ans = self.resolver.query(domain, self.server)
        if ans.meta.rcode not in _EMPTY_OK_RCODES:
            raise CAAResolutionError(domain, ans.meta.rcode)
        return [CAARecord.from_text(t) for t in ans.rdata("CAA")]


@dataclass
class CAAResult:
    domain: str
    records: List[str]
    has_caa: bool
    lets_encrypt_allowed: bool
    parent_domain: Optional[str]
    parent_domain_allows_lets_encrypt: bool
    tree_allows_lets_encrypt: bool
    status: str
    error: Optional[str]
    notes: List[str]


def check_caa(
    domain: str,
    resolver: DNSResolver,
    server: str,
    ca_identifiers: Sequence[str] = DEFAULT_CA_IDENTIFIERS,
) -> CAAResult:
    ev = CAAEvaluator(domain, DNSResolverCAAQuerier(resolver, server), ca_identifiers=ca_identifiers)
    return summarize(ev)


def summarize(ev: CAAEvaluator) -> CAAResult:
    """Flatten an evaluator into a report-friendly result."""
    notes: List[str] = []
    status = ev.status()
    relevant = ev.relevant_evaluator()
    ca = ", ".join(ev.ca_identifiers)

    if ev.errored():
        notes.append(f"CAA lookup failed for {ev.domain}: {ev.error()}. Policy could not be determined.")
    elif not ev.records_present():
        if relevant is not ev and relevant.records_present():
            notes.append(f"No CAA records at {ev.domain}; policy inherited from {relevant.domain}.")
        elif relevant is not ev and relevant.errored():
            notes.append(f"No CAA records at {ev.domain}; lookup at {relevant.domain} failed: {relevant.error()}.")
        else:
            notes.append("No CAA records found. CAA is optional but can reduce certificate mis-issuance risk.")

    if status is CAAStatus.DISALLOWED:
        notes.append(f"CAA policy at {relevant.domain} does not authorize {ca}.")

    return CAAResult(
        domain=ev.domain,
        records=[r.to_text() for r in ev.records()],
        has_caa=ev.records_present(),
        lets_encrypt_allowed=ev.lets_encrypt_allowed(),
        parent_domain=ev.parent_domain(),
        parent_domain_allows_lets_encrypt=ev.parent_domain_allows_lets_encrypt(),
        tree_allows_lets_encrypt=ev.tree_allows_lets_encrypt(),
        status=status.value,
        error=str(ev.error()) if ev.errored() else None,
        notes=notes,
    )
