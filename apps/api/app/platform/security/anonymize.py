from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from app import audit
from app.metrics import observe_anonymized_fields
from app.platform.security.context import Permissions
from app.platform.security.errors import AnonymizationLeakError


UNKNOWN_ADVISOR = "Unknown"
AGGREGATED_DATA_SOURCE = "Aggregated"
MIN_TEAM_SIZE = 2
# Fields that must never carry a value in a row served to a capital partner.
# advisor_name and account_name are rewritten rather than dropped.
IDENTITY_FIELD_DENYLIST: frozenset[str] = frozenset(
    {
        "name",
        "full_name",
        "first_name",
        "last_name",
        "real_name",
        "advisor_normalized_name",
        "normalized_name",
        "contact_name",
        "team_name",
        "firm_name",
        "orion_representative_id",
        "email",
        "phone",
        "advisor_email",
        "advisor_phone",
        "overridden_by",
        "override_reason",
        "original_gross_revenue",
        "original_commissions_paid",
        "overridden_at",
        "id",
    }
)


@dataclass(frozen=True, slots=True)
class AdvisorAlias:
    real_name: str
    anonymous_id: str
    account_name: str | None
    anonymous_team: str | None


@dataclass(slots=True)
class AnonymizationMap:
    """Real advisor name to anonymous identity, with team names hidden for solo accounts."""

    _by_real_name: dict[str, AdvisorAlias] = field(default_factory=dict)
    _by_anonymous_id: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, aliases: Iterable[AdvisorAlias]) -> "AnonymizationMap":
        aliases = list(aliases)
        team_sizes = Counter(alias.account_name for alias in aliases if alias.account_name)
        instance = cls()
        for alias in aliases:
            size = team_sizes.get(alias.account_name, 0) if alias.account_name else 0
            instance._by_real_name[alias.real_name] = AdvisorAlias(
                real_name=alias.real_name,
                anonymous_id=alias.anonymous_id,
                account_name=alias.account_name,
                anonymous_team=alias.anonymous_team if size >= MIN_TEAM_SIZE else None,
            )
            instance._by_anonymous_id[alias.anonymous_id] = alias.real_name
        return instance

    def anonymous_id(self, real_name: str | None) -> str:
        alias = self._by_real_name.get(real_name or "")
        return alias.anonymous_id if alias is not None else UNKNOWN_ADVISOR

    def anonymous_team(self, real_name: str | None) -> str | None:
        alias = self._by_real_name.get(real_name or "")
        return alias.anonymous_team if alias is not None else None

    def resolve_real_name(self, anonymous_id: str) -> str | None:
        return self._by_anonymous_id.get(anonymous_id)

    def real_identities(self) -> set[str]:
        names = set(self._by_real_name)
        names.update(alias.account_name for alias in self._by_real_name.values() if alias.account_name)
        return names


class AnonymizingProjector:
    """Column-level projection of advisor rows for capital-partner principals.

    Other roles get rows back untouched. For capital partners every identity
    field is replaced or nulled, then the output is scanned once more and an
    ``AnonymizationLeakError`` is raised if any real identity survived.
    """

    def __init__(self, aliases: AnonymizationMap) -> None:
        self._aliases = aliases

    def project_rows(
        self,
        rows: Iterable[Mapping[str, Any]],
        permissions: Permissions,
        *,
        resource: str = "gc_hub.advisor_row",
    ) -> list[dict[str, Any]]:
        if not permissions.is_capital_partner:
            return [dict(row) for row in rows]

        projected: list[dict[str, Any]] = []
        masked = 0
        for row in rows:
            output, count = self._mask_row(row)
            projected.append(output)
            masked += count

        self._assert_clean(resource, projected)
        _emit_anonymization_observability(resource=resource, permissions=permissions, rows=len(projected), masked=masked)
        return projected

    def project_detail(
        self,
        detail: Mapping[str, Any],
        permissions: Permissions,
        *,
        resource: str = "gc_hub.advisor_detail",
    ) -> dict[str, Any]:
        if not permissions.is_capital_partner:
            return dict(detail)

        header, masked = self._mask_row({key: value for key, value in detail.items() if key != "periods"})
        periods: list[dict[str, Any]] = []
        for period in detail.get("periods", []):
            output, count = self._mask_row(period)
            output.pop("advisor_name", None)
            output.pop("account_name", None)
            output.pop("is_manually_overridden", None)
            output["data_source"] = AGGREGATED_DATA_SOURCE
            periods.append(output)
            masked += count + 1
        header["periods"] = periods

        self._assert_clean(resource, [header, *periods])
        _emit_anonymization_observability(resource=resource, permissions=permissions, rows=len(periods), masked=masked)
        return header

    def project_filter_options(
        self,
        advisors_by_account: Mapping[str, Iterable[str]],
        advisor_names: Iterable[str],
        permissions: Permissions,
        *,
        resource: str = "gc_hub.filter_options",
    ) -> tuple[dict[str, list[str]], list[str]]:
        """Dropdown options keyed by team. Capital partners see anonymous teams and ids only."""
        if not permissions.is_capital_partner:
            return (
                {account: sorted(names) for account, names in sorted(advisors_by_account.items())},
                sorted(advisor_names),
            )

        by_team: dict[str, list[str]] = {}
        for names in advisors_by_account.values():
            for real_name in names:
                team = self._aliases.anonymous_team(real_name)
                if team is not None:
                    by_team.setdefault(team, []).append(self._aliases.anonymous_id(real_name))
        teams = {team: sorted(ids) for team, ids in sorted(by_team.items())}
        anonymous_ids = sorted(self._aliases.anonymous_id(name) for name in advisor_names)

        self._assert_clean(
            resource,
            [{"account_name": team} for team in teams] + [{"advisor_name": value} for value in anonymous_ids],
        )
        masked = len(anonymous_ids) + sum(len(ids) for ids in teams.values())
        _emit_anonymization_observability(resource=resource, permissions=permissions, rows=len(teams), masked=masked)
        return teams, anonymous_ids

    def resolve_anonymous_id(self, anonymous_id: str) -> str | None:
        return self._aliases.resolve_real_name(anonymous_id)

    def _mask_row(self, row: Mapping[str, Any]) -> tuple[dict[str, Any], int]:
        output = {key: value for key, value in row.items() if key not in IDENTITY_FIELD_DENYLIST}
        masked = len(row) - len(output)

        real_name = row.get("advisor_name")
        if "advisor_name" in row:
            output["advisor_name"] = self._aliases.anonymous_id(real_name)
            masked += 1
        if "account_name" in row or "advisor_name" in row:
            output["account_name"] = self._aliases.anonymous_team(real_name)
            masked += 1
        if "orion_representative_id" in row:
            output["orion_representative_id"] = None
        if "is_manually_overridden" in row:
            output["is_manually_overridden"] = False
        return output, masked

    def _assert_clean(self, resource: str, rows: list[dict[str, Any]]) -> None:
        # Any string equal to a mapped real name counts, whatever key carries it.
        real_identities = {name.strip().casefold() for name in self._aliases.real_identities()}
        leaked: list[str] = []
        for row in rows:
            for key, value in row.items():
                if key in IDENTITY_FIELD_DENYLIST and value is not None:
                    leaked.append(key)
                elif isinstance(value, str) and value.strip().casefold() in real_identities:
                    leaked.append(key)
        if leaked:
            raise AnonymizationLeakError(resource=resource, fields=leaked)


def _emit_anonymization_observability(*, resource: str, permissions: Permissions, rows: int, masked: int) -> None:
    if masked == 0:
        return

    observe_anonymized_fields(resource=resource, count=masked)
    audit.record(
        actor=permissions.email,
        entity_type="security.anonymize",
        entity_id=resource,
        action="anonymize.read",
        details={"role": permissions.role.value, "rows": rows, "masked_count": masked},
    )
