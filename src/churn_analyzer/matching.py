# src/churn_analyzer/matching.py
"""
Link CRM accounts to ticket-system organizations by fuzzy name matching.

Passes, first hit wins per account:
  1. exact match on the normalized name
  2. best Jaccard overlap of normalized tokens
  3. normalized Levenshtein similarity, only when the best overlap is < 0.5
Scores >= MATCH_HIGH_CONFIDENCE are auto-confirmed, scores >= MATCH_REVIEW_MIN
are stored for review, anything lower is stored as unmatched.
"""

from __future__ import annotations

import argparse
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from . import config
from .db import Account, AccountOrgLink, Organization, session_scope, upsert_link

logger = logging.getLogger(__name__)

STRIP_WORDS = frozenset(
    {
        "inc", "llc", "ltd", "corp", "corporation", "co", "company", "the",
        "auto", "automotive", "repair", "shop", "service", "services",
        "center", "centre", "group", "of", "and", "&",
    }
)

METHOD_EXACT = "exact"
METHOD_TOKEN_OVERLAP = "token_overlap"
METHOD_EDIT_DISTANCE = "edit_distance"
METHOD_MANUAL = "manual"
METHOD_NONE = "none"


@dataclass(frozen=True)
class MatchCandidate:
    account_id: str
    account_name: str
    org_id: int | None
    org_name: str | None
    score: float
    method: str


@dataclass
class MatchResults:
    high_confidence: list[MatchCandidate] = field(default_factory=list)
    needs_review: list[MatchCandidate] = field(default_factory=list)
    unmatched: list[MatchCandidate] = field(default_factory=list)
    already_confirmed: int = 0

    def counts(self) -> dict[str, int]:
        return {
            "high_confidence": len(self.high_confidence),
            "needs_review": len(self.needs_review),
            "unmatched": len(self.unmatched),
            "already_confirmed": self.already_confirmed,
        }


# ---------------------------------------------------------------------------
# String similarity


def tokenize(name: str) -> list[str]:
    cleaned = re.sub(r"[^a-z0-9\s]", "", (name or "").lower())
    return [w for w in cleaned.split() if w and w not in STRIP_WORDS]


def normalize(name: str) -> str:
    """Lower-case, strip punctuation and generic corporate words."""
    return " ".join(tokenize(name))


def jaccard(a: str, b: str) -> float:
    set_a = set(tokenize(a))
    set_b = set(tokenize(b))
    if not set_a and not set_b:
        return 0.0
    union = len(set_a | set_b)
    return len(set_a & set_b) / union if union else 0.0


def levenshtein(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ch_a in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, ch_b in enumerate(b, start=1):
            cost = 0 if ch_a == ch_b else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
        previous = current
    return previous[-1]


def levenshtein_ratio(a: str, b: str) -> float:
    """1 - edit distance / longest length, over normalized names."""
    na, nb = normalize(a), normalize(b)
    longest = max(len(na), len(nb))
    if longest == 0:
        return 0.0
    return 1 - levenshtein(na, nb) / longest


# ---------------------------------------------------------------------------
# Multi-pass matching


def find_best_matches(
    accounts: Iterable[tuple[str, str]],
    organizations: Iterable[tuple[int, str]],
) -> MatchResults:
    """Bucket every ``(account_id, name)`` against ``(org_id, name)`` pairs."""

    orgs = [(org_id, name, normalize(name), set(tokenize(name))) for org_id, name in organizations]
    by_normalized: dict[str, tuple[int, str]] = {}
    for org_id, name, norm, _ in orgs:
        if norm and norm not in by_normalized:
            by_normalized[norm] = (org_id, name)

    results = MatchResults()
    for account_id, account_name in accounts:
        account_norm = normalize(account_name)
        if not account_norm:
            results.unmatched.append(
                MatchCandidate(account_id, account_name, None, None, 0.0, METHOD_NONE)
            )
            continue

        best: tuple[int, str] | None = None
        best_score = 0.0
        method = METHOD_NONE

        exact = by_normalized.get(account_norm)
        if exact is not None:
            best, best_score, method = exact, 1.0, METHOD_EXACT
        else:
            account_tokens = set(account_norm.split())
            for org_id, name, _, tokens in orgs:
                union = len(account_tokens | tokens)
                score = len(account_tokens & tokens) / union if union else 0.0
                if score > best_score:
                    best, best_score, method = (org_id, name), score, METHOD_TOKEN_OVERLAP

        if best_score < config.MATCH_REVIEW_MIN:
            for org_id, name, norm, _ in orgs:
                longest = max(len(account_norm), len(norm))
                score = 1 - levenshtein(account_norm, norm) / longest if longest else 0.0
                if score > best_score:
                    best, best_score, method = (org_id, name), score, METHOD_EDIT_DISTANCE

        candidate = MatchCandidate(
            account_id=account_id,
            account_name=account_name,
            org_id=best[0] if best else None,
            org_name=best[1] if best else None,
            score=round(best_score, 2),
            method=method,
        )
        if best_score >= config.MATCH_HIGH_CONFIDENCE:
            results.high_confidence.append(candidate)
        elif best_score >= config.MATCH_REVIEW_MIN:
            results.needs_review.append(candidate)
        else:
            results.unmatched.append(candidate)

    return results


def match_accounts(session: Session) -> MatchResults:
    """Match every account without a confirmed link and persist the outcome."""

    confirmed_ids = set(
        session.scalars(
            select(AccountOrgLink.account_id).where(AccountOrgLink.confirmed.is_(True))
        )
    )
    accounts = [
        (a.account_id, a.name)
        for a in session.scalars(select(Account).order_by(Account.account_id))
        if a.account_id not in confirmed_ids
    ]
    organizations = [(o.org_id, o.name) for o in session.scalars(select(Organization))]

    if not organizations:
        raise LookupError("No organizations in the store; import organizations first.")

    logger.info(
        "Matching %d accounts against %d organizations (%d already confirmed)",
        len(accounts),
        len(organizations),
        len(confirmed_ids),
    )
    results = find_best_matches(accounts, organizations)
    results.already_confirmed = len(confirmed_ids)

    for bucket, confirmed in ((results.high_confidence, True), (results.needs_review, False)):
        for m in bucket:
            upsert_link(
                session,
                account_id=m.account_id,
                org_id=m.org_id,
                candidate_org_id=m.org_id,
                match_method=m.method,
                match_score=m.score,
                confirmed=confirmed,
            )
    for m in results.unmatched:
        upsert_link(
            session,
            account_id=m.account_id,
            org_id=None,
            candidate_org_id=m.org_id,
            match_method=m.method,
            match_score=m.score,
            confirmed=False,
        )

    session.flush()
    logger.info("Match results: %s", results.counts())
    return results


def link_manual(session: Session, account: str, org_id: int) -> AccountOrgLink:
    """Confirm ``account`` (id or case-insensitive name) -> ``org_id`` by hand."""

    record = session.get(Account, account)
    if record is None:
        record = session.scalars(
            select(Account).where(func.lower(Account.name) == account.lower())
        ).first()
    if record is None:
        raise LookupError(f"No account found with id or name: {account!r}")
    if session.get(Organization, org_id) is None:
        raise LookupError(f"No organization found with id: {org_id}")

    link = upsert_link(
        session,
        account_id=record.account_id,
        org_id=org_id,
        candidate_org_id=org_id,
        match_method=METHOD_MANUAL,
        match_score=1.0,
        confirmed=True,
    )
    session.flush()
    logger.info("Manually linked %s -> organization %s", record.account_id, org_id)
    return link


def reset_unconfirmed(session: Session) -> int:
    result = session.execute(delete(AccountOrgLink).where(AccountOrgLink.confirmed.is_(False)))
    return int(result.rowcount or 0)


def _print_results(results: MatchResults) -> None:
    print(f"--- High confidence (auto-confirmed): {len(results.high_confidence)} ---")
    for m in results.high_confidence[:10]:
        print(f"  [OK] {m.account_name!r} -> {m.org_name!r} ({m.method}, {m.score})")

    print(f"--- Needs review: {len(results.needs_review)} ---")
    for m in results.needs_review[:20]:
        print(f"  [?] {m.account_name!r} -> {m.org_name!r} ({m.method}, {m.score})")
    if results.needs_review:
        print('  Confirm with: churn-analyzer match --link "Account Name" <org_id>')

    print(f"--- Unmatched: {len(results.unmatched)} ---")
    for m in results.unmatched[:15]:
        closest = f" (closest: {m.org_name!r} at {m.score})" if m.org_name else ""
        print(f"  [ ] {m.account_name!r}{closest}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Match CRM accounts to ticket organizations.")
    parser.add_argument(
        "--link",
        nargs=2,
        metavar=("ACCOUNT", "ORG_ID"),
        default=None,
        help="Manually link an account (id or name) to an organization id.",
    )
    parser.add_argument("--reset", action="store_true", help="Clear unconfirmed matches.")
    args = parser.parse_args(argv)

    with session_scope() as session:
        if args.link:
            account, org_id = args.link
            link = link_manual(session, account, int(org_id))
            print(f"Linked {link.account_id} -> organization {link.org_id} [manual, confirmed]")
        elif args.reset:
            print(f"Cleared {reset_unconfirmed(session)} unconfirmed matches.")
        else:
            _print_results(match_accounts(session))


if __name__ == "__main__":
    main()
