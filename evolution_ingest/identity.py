"""
Contact identity resolution.

The gateway may hide a contact's phone behind an anonymized linked
identifier ("123456789@lid"). Resolution walks an ordered list of
strategies and stops at the first one that yields a phone:

1. direct_identifier    - the remote JID is already phone based
2. event_participant    - key.participant is phone based
3. message_participant  - data.participant / key.senderPn / key.remoteJidAlt
4. contacts_lookup      - gateway contacts search, by JID then by push name
5. lid_digits           - the LID's own digits, when long enough

An empty phone means the identity is unresolvable; the caller must drop the
event rather than store it under a bogus contact.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from evolution_ingest.evolution_client import EvolutionAPIError, EvolutionClient
from evolution_ingest.metrics import record_identity_resolution
from evolution_ingest.phone import MIN_PHONE_DIGITS, is_group, is_lid, is_plausible_phone, normalize_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionContext:
    remote_jid: str
    instance_name: str = ""
    push_name: Optional[str] = None
    participant: Optional[str] = None
    alt_participant: Optional[str] = None
    own_phone: Optional[str] = None

    @classmethod
    def from_message(
        cls, instance_name: str, data: Dict[str, Any], own_phone: Optional[str] = None
    ) -> "ResolutionContext":
        key = data.get("key") if isinstance(data.get("key"), dict) else {}

        def _str(value: Any) -> Optional[str]:
            return value.strip() if isinstance(value, str) and value.strip() else None

        alt = next(
            (v for v in (_str(data.get("participant")), _str(key.get("senderPn")), _str(key.get("remoteJidAlt"))) if v),
            None,
        )
        # on outgoing messages pushName is the instance owner's own name
        push_name = None if key.get("fromMe") else _str(data.get("pushName"))
        return cls(
            remote_jid=_str(key.get("remoteJid")) or "",
            instance_name=instance_name,
            push_name=push_name,
            participant=_str(key.get("participant")),
            alt_participant=alt,
            own_phone=normalize_phone(own_phone) or None,
        )


@dataclass(frozen=True)
class Resolution:
    phone: str
    strategy: str

    @property
    def resolved(self) -> bool:
        return bool(self.phone)


StrategyResult = Union[Optional[str], Awaitable[Optional[str]]]
Strategy = Callable[[ResolutionContext], StrategyResult]


def _phone_from(jid: Optional[str]) -> Optional[str]:
    if not jid or is_lid(jid) or is_group(jid):
        return None
    digits = normalize_phone(jid)
    return digits if is_plausible_phone(digits) else None


# =============================================================================
# Strategies
# =============================================================================

def direct_identifier(ctx: ResolutionContext) -> Optional[str]:
    return _phone_from(ctx.remote_jid)


def event_participant(ctx: ResolutionContext) -> Optional[str]:
    return _phone_from(ctx.participant)


def message_participant(ctx: ResolutionContext) -> Optional[str]:
    return _phone_from(ctx.alt_participant)


def lid_digits(ctx: ResolutionContext) -> Optional[str]:
    if not is_lid(ctx.remote_jid):
        return None
    digits = normalize_phone(ctx.remote_jid)
    return digits if len(digits) >= MIN_PHONE_DIGITS else None


def choose_candidate(
    contacts: Iterable[Dict[str, Any]],
    push_name: Optional[str] = None,
    exclude: Optional[str] = None,
) -> Optional[str]:
    """
    Pick a phone from gateway contact records.

    LID and group records are discarded, as is the instance's own number
    (``exclude``); a record whose pushName matches (case-insensitive) is
    tried first, then the rest in the order given. The first candidate
    with a plausible length (8-15 digits) wins.
    """
    usable: List[Tuple[Dict[str, Any], str]] = []
    for contact in contacts:
        jid = contact.get("remoteJid") or contact.get("id")
        if not isinstance(jid, str) or is_lid(jid) or is_group(jid):
            continue
        usable.append((contact, jid))

    if push_name:
        wanted = push_name.strip().casefold()
        matching = [item for item in usable if str(item[0].get("pushName") or "").strip().casefold() == wanted]
        others = [item for item in usable if item not in matching]
        usable = matching + others

    for _, jid in usable:
        digits = normalize_phone(jid)
        if is_plausible_phone(digits) and digits != exclude:
            return digits
    return None


class IdentityResolver:
    def __init__(self, client: Optional[EvolutionClient] = None):
        self.client = client
        self.strategies: List[Tuple[str, Strategy]] = [
            ("direct", direct_identifier),
            ("event_participant", event_participant),
            ("message_participant", message_participant),
            ("contacts_lookup", self.lookup_contacts),
            ("lid_digits", lid_digits),
        ]

    async def lookup_contacts(self, ctx: ResolutionContext) -> Optional[str]:
        if self.client is None or not self.client.enabled or not is_lid(ctx.remote_jid):
            return None

        queries: List[Dict[str, str]] = [{"remoteJid": ctx.remote_jid}]
        if ctx.push_name:
            queries.append({"pushName": ctx.push_name})

        for where in queries:
            try:
                contacts = await self.client.find_contacts(ctx.instance_name, where)
            except EvolutionAPIError as e:
                logger.warning(f"Contacts lookup failed for {ctx.remote_jid} ({sorted(where)}): {e}")
                continue
            phone = choose_candidate(contacts, ctx.push_name, exclude=ctx.own_phone)
            if phone:
                return phone
        return None

    async def resolve(self, ctx: ResolutionContext) -> Resolution:
        for name, strategy in self.strategies:
            result = strategy(ctx)
            if inspect.isawaitable(result):
                result = await result
            if result:
                if name != "direct":
                    logger.info(f"Resolved {ctx.remote_jid} to {result} via {name}")
                record_identity_resolution(name)
                return Resolution(phone=result, strategy=name)

        logger.warning(f"Could not resolve contact identity for {ctx.remote_jid}")
        record_identity_resolution("unresolved")
        return Resolution(phone="", strategy="unresolved")
