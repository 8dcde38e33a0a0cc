"""Code registry: durable mapping from short code or custom alias to target URL.

The registry is the authority for redirect resolution and for uniqueness of
codes. Generated codes (table ``urls``) and custom aliases (table
``custom_aliases``) share one lookup namespace.

Lookup Order
============
::
    code ──▶ urls.short_code (active) ──hit──▶ entry
               │ miss
               ▼
             custom_aliases.custom_code (active) ──▶ urls.id (active) ──▶ entry

An entry resolves only while it is active and not past ``expires_at``.

Key Behaviours
===============
- ``put`` writes the entry and its optional alias in one transaction; a
  conflict on either leaves nothing behind.
- Uniqueness within each table is backed by a partial unique index; an
  ``IntegrityError`` from a concurrent writer is reported as a conflict.
- Uniqueness across the two tables is check-then-insert only. Two writers
  racing to claim the same name, one as a generated code and one as an
  alias, can both succeed; lookup then prefers the generated code. Generated
  codes come from disjoint ranges, so this needs a custom alias that
  happens to spell a code that has not been minted yet.
- Deactivating a generated code deactivates its aliases too, so their names
  become available again.
- ``increment_clicks`` is a plain ``UPDATE ... SET click_count = click_count + n``
  and is never part of the redirect transaction.
"""

import datetime
from dataclasses import dataclass, field

from sqlalchemy import exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shortener.exceptions import AliasTakenError, CodeAlreadyExistsError, NotAuthorizedError, UrlNotFoundError
from shortener.models import CustomAlias, ShortURL, utcnow

__all__ = ["CodeRegistry", "OwnedURL", "is_expired"]


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value


def is_expired(entry: ShortURL, now: datetime.datetime | None = None) -> bool:
    if entry.expires_at is None:
        return False
    return _as_utc(entry.expires_at) <= (now or utcnow())


@dataclass
class OwnedURL:
    entry: ShortURL
    aliases: list[str] = field(default_factory=list)


class CodeRegistry:
    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def is_taken(self, code: str) -> bool:
        """Whether ``code`` is held by an active generated code or an active alias."""
        stmt = select(
            or_(
                exists().where(ShortURL.short_code == code, ShortURL.is_active.is_(True)),
                exists().where(CustomAlias.custom_code == code, CustomAlias.is_active.is_(True)),
            )
        )
        return bool((await self._db.execute(stmt)).scalar())

    async def put(
        self,
        code: str,
        target_url: str,
        owner: str | None = None,
        expires_at: datetime.datetime | None = None,
        alias: str | None = None,
    ) -> ShortURL:
        """Insert a generated code, and optionally an alias for it, atomically.

        Raises:
            CodeAlreadyExistsError: ``code`` is already active in the namespace
            AliasTakenError: ``alias`` is already active in the namespace
        """
        if await self.is_taken(code):
            raise CodeAlreadyExistsError(code)
        if alias is not None and (alias == code or await self.is_taken(alias)):
            raise AliasTakenError(alias)

        entry = ShortURL(
            short_code=code,
            original_url=target_url,
            owner_id=owner,
            expires_at=expires_at,
            click_count=0,
            is_active=True,
        )
        try:
            self._db.add(entry)
            await self._db.flush()
            if alias is not None:
                self._db.add(CustomAlias(url_id=entry.id, custom_code=alias, is_active=True))
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            if alias is not None and await self.is_taken(alias):
                raise AliasTakenError(alias) from exc
            raise CodeAlreadyExistsError(code) from exc

        await self._db.refresh(entry)
        return entry

    async def add_alias(self, code: str, alias: str, owner: str) -> CustomAlias:
        """Attach another custom alias to the entry behind ``code``. Owner only."""
        entry = await self._find_entry(code)
        self._check_owner(entry, owner)

        if await self.is_taken(alias):
            raise AliasTakenError(alias)

        custom = CustomAlias(url_id=entry.id, custom_code=alias, is_active=True)
        try:
            self._db.add(custom)
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise AliasTakenError(alias) from exc

        await self._db.refresh(custom)
        return custom

    async def get_entry(self, code: str) -> ShortURL:
        """Return the active, unexpired entry behind a code or alias."""
        entry = await self._find_entry(code)
        if is_expired(entry):
            raise UrlNotFoundError(code)
        return entry

    async def get_active(self, code: str) -> str:
        """Return the target URL of an active, unexpired code or alias."""
        return (await self.get_entry(code)).original_url

    async def deactivate(self, code: str, owner: str) -> list[str]:
        """Soft-delete a code or alias. Returns the codes that no longer resolve."""
        entry = await self._db.scalar(
            select(ShortURL).where(ShortURL.short_code == code, ShortURL.is_active.is_(True))
        )
        if entry is not None:
            self._check_owner(entry, owner)
            retired = await self._retire(entry)
            await self._db.commit()
            return retired

        custom = await self._db.scalar(
            select(CustomAlias).where(CustomAlias.custom_code == code, CustomAlias.is_active.is_(True))
        )
        if custom is None:
            raise UrlNotFoundError(code)
        parent = await self._db.get(ShortURL, custom.url_id)
        self._check_owner(parent, owner)
        custom.is_active = False
        await self._db.commit()
        return [code]

    async def increment_clicks(self, code: str, delta: int = 1) -> bool:
        """Add ``delta`` clicks to the entry behind ``code``. Returns False if nothing matched."""
        result = await self._db.execute(
            update(ShortURL)
            .where(ShortURL.short_code == code, ShortURL.is_active.is_(True))
            .values(click_count=ShortURL.click_count + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            alias_target = (
                select(CustomAlias.url_id)
                .where(CustomAlias.custom_code == code, CustomAlias.is_active.is_(True))
                .scalar_subquery()
            )
            result = await self._db.execute(
                update(ShortURL)
                .where(ShortURL.id == alias_target)
                .values(click_count=ShortURL.click_count + delta)
                .execution_options(synchronize_session=False)
            )
        await self._db.commit()
        return result.rowcount > 0

    async def aliases_for(self, url_id: int) -> list[str]:
        result = await self._db.execute(
            select(CustomAlias.custom_code)
            .where(CustomAlias.url_id == url_id, CustomAlias.is_active.is_(True))
            .order_by(CustomAlias.id)
        )
        return list(result.scalars())

    async def list_owned(self, owner: str) -> list[OwnedURL]:
        result = await self._db.execute(
            select(ShortURL)
            .where(ShortURL.owner_id == owner, ShortURL.is_active.is_(True))
            .order_by(ShortURL.created_at.desc(), ShortURL.id.desc())
        )
        return [OwnedURL(entry, await self.aliases_for(entry.id)) for entry in result.scalars()]

    async def deactivate_expired(self, now: datetime.datetime | None = None) -> list[str]:
        """Soft-delete every active entry past its expiry. Returns the retired codes."""
        now = now or utcnow()
        result = await self._db.execute(
            select(ShortURL).where(ShortURL.is_active.is_(True), ShortURL.expires_at.is_not(None))
        )
        retired: list[str] = []
        for entry in result.scalars():
            if is_expired(entry, now):
                retired.extend(await self._retire(entry))
        if retired:
            await self._db.commit()
        return retired

    # ========================================================================
    # PRIVATE HELPERS
    # ========================================================================

    async def _retire(self, entry: ShortURL) -> list[str]:
        """Deactivate an entry together with its aliases, which frees their names."""
        retired = [entry.short_code, *await self.aliases_for(entry.id)]
        entry.is_active = False
        await self._db.execute(
            update(CustomAlias)
            .where(CustomAlias.url_id == entry.id, CustomAlias.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        return retired

    async def _find_entry(self, code: str) -> ShortURL:
        # Click counts are updated from other sessions.
        entry = await self._db.scalar(
            select(ShortURL)
            .where(ShortURL.short_code == code, ShortURL.is_active.is_(True))
            .execution_options(populate_existing=True)
        )
        if entry is not None:
            return entry

        alias_stmt = (
            select(ShortURL)
            .join(CustomAlias, CustomAlias.url_id == ShortURL.id)
            .where(
                CustomAlias.custom_code == code,
                CustomAlias.is_active.is_(True),
                ShortURL.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        entry = await self._db.scalar(alias_stmt)
        if entry is None:
            raise UrlNotFoundError(code)
        return entry

    @staticmethod
    def _check_owner(entry: ShortURL, owner: str) -> None:
        if entry.owner_id is None or entry.owner_id != owner:
            raise NotAuthorizedError("Not authorized to modify this URL")
