#!/usr/bin/env python3
"""
Print a user's effective tier, limits and current usage.

Usage:
    python -m gamerhub.scripts.show_subscription_status --user-id user_123 [--json]
"""
import argparse
import json
from typing import List, Optional

from gamerhub.features.entitlements.service import ActionKind, get_entitlement_service
from gamerhub.models.subscription import UNLIMITED


def _fmt_limit(value) -> str:
    return "unlimited" if value == UNLIMITED else str(value)


def build_report(user_id: str) -> dict:
    service = get_entitlement_service()
    subscription = service.get_user_subscription(user_id)
    return {
        "user_id": user_id,
        "tier": subscription.tier.value,
        "status": subscription.status,
        "admin": service.is_admin(user_id),
        "limits": service.get_user_limits(user_id).model_dump(mode="json"),
        "usage": service.get_usage_summary(user_id).model_dump(mode="json"),
        "checks": {kind.value: service.check(user_id, kind).as_dict() for kind in ActionKind},
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Show subscription tier, limits and usage for a user.")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    args = parser.parse_args(argv)

    report = build_report(args.user_id)
    if args.json:
        print(json.dumps(report, indent=2))
        return 0

    limits = report["limits"]
    usage = report["usage"]
    print(f"User:   {report['user_id']}{' (admin)' if report['admin'] else ''}")
    print(f"Tier:   {report['tier']} [{report['status']}]")
    print(f"Posts today:      {usage['posts_today']} / {_fmt_limit(limits['max_posts_per_day'])}")
    print(f"Boosts this month: {usage['boosts_this_month']} / {_fmt_limit(limits['max_boosts_per_month'])}")
    print(f"Group memberships: {usage['group_count']} / {_fmt_limit(limits['max_group_memberships'])}")
    print(f"Storage:          {usage['storage_used_gb']:.2f}GB / {_fmt_limit(limits['max_storage_gb'])}GB")
    for action, decision in report["checks"].items():
        mark = "✅" if decision["allowed"] else "❌"
        print(f"  {mark} {action}{': ' + decision['reason'] if decision.get('reason') else ''}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
