"""
Audience resolution.

Turns an AudienceDescriptor into the concrete, deduplicated list of
recipients it denotes within a DomainSnapshot. Resolution is pure: the same
descriptor against the same snapshot always yields the same recipients.

Delivery addresses depend on the channel:
    sms      -> normalized phone number (players without a login are
                reached through their emergency contact number)
    realtime -> user id
"""

from collections.abc import Iterable, Iterator

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.audience_domain import (
    ROLE_PARENT,
    ROLE_PLAYER,
    AllAudience,
    AudienceDescriptor,
    BranchScope,
    RolesAudience,
    ScopedAudience,
    canonicalize,
)
from app.models.domain.snapshot_domain import DomainSnapshot, PlayerRecord, Recipient, UserRecord
from app.models.domain.trigger_domain import Channel
from app.services.sms.phone import format_phone

logger = get_logger(__name__)


def mirror_player_roles(roles: Iterable[str]) -> set[str]:
    """Player-directed realtime events also reach parents, who manage player profiles."""
    expanded = set(roles)
    if ROLE_PLAYER in expanded:
        expanded.add(ROLE_PARENT)
    return expanded


class AudienceResolver:
    """Resolve audience descriptors against a snapshot of users and players."""

    def __init__(self, country_code: str = "966"):
        self.country_code = country_code

    def resolve(
        self,
        descriptor: AudienceDescriptor,
        snapshot: DomainSnapshot,
        channel: Channel = Channel.SMS,
    ) -> list[Recipient]:
        """
        Resolve a descriptor to recipients, deduplicated by delivery address.

        Args:
            descriptor: Audience to resolve (legacy tokens are canonicalized)
            snapshot: Users and players to resolve against
            channel: Determines the delivery address of each recipient

        Returns:
            list[Recipient]: First occurrence of each address, in resolution order
        """
        audience = canonicalize(descriptor)

        if isinstance(audience, AllAudience):
            candidates = self._resolve_all(snapshot, channel)
        elif isinstance(audience, RolesAudience):
            roles = set(audience.roles)
            if channel is Channel.REALTIME:
                roles = mirror_player_roles(roles)
            candidates = self._resolve_roles(roles, snapshot, channel)
        elif isinstance(audience, ScopedAudience):
            candidates = self._resolve_scoped(audience, snapshot, channel)
        else:
            raise TypeError(f"Unsupported audience descriptor: {type(descriptor).__name__}")

        recipients = self._dedupe(candidates)
        logger.debug(
            "Audience resolved",
            audience=type(audience).__name__,
            channel=channel.value,
            recipients=len(recipients),
        )
        return recipients

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------

    def _resolve_all(self, snapshot: DomainSnapshot, channel: Channel) -> Iterator[Recipient]:
        for user in snapshot.active_users():
            yield from self._user_recipient(user, channel)
        for player in snapshot.active_players():
            yield from self._derived_player_recipient(player, channel)

    def _resolve_roles(
        self, roles: set[str], snapshot: DomainSnapshot, channel: Channel
    ) -> Iterator[Recipient]:
        for user in snapshot.active_users():
            if user.role in roles:
                yield from self._user_recipient(user, channel)
        if ROLE_PLAYER in roles:
            for player in snapshot.active_players():
                yield from self._derived_player_recipient(player, channel)

    def _resolve_scoped(
        self, audience: ScopedAudience, snapshot: DomainSnapshot, channel: Channel
    ) -> Iterator[Recipient]:
        for branch_id in sorted(audience.branches):
            scope = audience.branches[branch_id]
            yield from self._resolve_branch(branch_id, scope, snapshot, channel)
            yield from self._resolve_explicit(sorted(scope.users), snapshot, channel)
        yield from self._resolve_explicit(sorted(audience.users), snapshot, channel)

    def _resolve_branch(
        self, branch_id: str, scope: BranchScope, snapshot: DomainSnapshot, channel: Channel
    ) -> Iterator[Recipient]:
        roles = set(scope.roles)
        if channel is Channel.REALTIME:
            roles = mirror_player_roles(roles)

        branch_players = [p for p in snapshot.active_players() if p.branch_id == branch_id]

        # Parents belong to a branch through their children as well as their own branch_id
        parent_ids = {p.parent_id for p in branch_players if p.parent_id}
        player_user_ids = {p.self_user_id for p in branch_players if p.self_user_id}

        for user in snapshot.active_users():
            if user.role not in roles:
                continue
            if user.branch_id == branch_id:
                yield from self._user_recipient(user, channel)
            elif user.role == ROLE_PARENT and user.id in parent_ids:
                yield from self._user_recipient(user, channel)
            elif user.role == ROLE_PLAYER and user.id in player_user_ids:
                yield from self._user_recipient(user, channel)

        if ROLE_PLAYER in roles:
            for player in branch_players:
                yield from self._derived_player_recipient(player, channel)

    def _resolve_explicit(
        self, ids: list[str], snapshot: DomainSnapshot, channel: Channel
    ) -> Iterator[Recipient]:
        if not ids:
            return
        users = {u.id: u for u in snapshot.active_users()}
        players = {p.id: p for p in snapshot.active_players()}

        for target_id in ids:
            if target_id in users:
                yield from self._user_recipient(users[target_id], channel)
            elif target_id in players:
                player = players[target_id]
                if player.self_user_id and player.self_user_id in users:
                    yield from self._user_recipient(users[player.self_user_id], channel)
                else:
                    yield from self._derived_player_recipient(player, channel)

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def _user_recipient(self, user: UserRecord, channel: Channel) -> Iterator[Recipient]:
        if channel is Channel.REALTIME:
            yield Recipient(address=user.id, name=user.full_name, role=user.role, user_id=user.id)
            return
        if user.phone:
            yield Recipient(
                address=format_phone(user.phone, self.country_code),
                name=user.full_name,
                role=user.role,
                user_id=user.id,
            )

    def _derived_player_recipient(self, player: PlayerRecord, channel: Channel) -> Iterator[Recipient]:
        # Players with their own login are covered by their user record
        if channel is not Channel.SMS or player.self_user_id:
            return
        if player.emergency_contact_phone:
            yield Recipient(
                address=format_phone(player.emergency_contact_phone, self.country_code),
                name=player.full_name,
                role=ROLE_PLAYER,
                player_id=player.id,
            )

    @staticmethod
    def _dedupe(candidates: Iterable[Recipient]) -> list[Recipient]:
        seen: dict[str, Recipient] = {}
        for recipient in candidates:
            seen.setdefault(recipient.address, recipient)
        return list(seen.values())


# Singleton instance for application use
audience_resolver = AudienceResolver(country_code=settings.SMS_COUNTRY_CODE)
