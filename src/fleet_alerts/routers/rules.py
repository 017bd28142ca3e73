from __future__ import annotations

from fastapi import APIRouter, Request

from src.fleet_alerts.schemas.rules import RuleSetOut, RulesReloadResponse
from src.fleet_alerts.state import get_state

router = APIRouter(prefix="/api/rules", tags=["Rules"])


@router.get(
    "",
    response_model=RuleSetOut,
    summary="Current ruleset",
    description="Return the sanitised ruleset currently in effect (reloaded lazily when the rule file changes).",
    operation_id="get_rules",
)
def get_rules(request: Request) -> RuleSetOut:
    """Return the current ruleset."""
    return get_state(request.app).rules.current().to_out()


@router.post(
    "/reload",
    response_model=RulesReloadResponse,
    summary="Reload rules",
    description="Force a reload of the rule file. On failure the previous ruleset stays in effect and the error is reported.",
    operation_id="reload_rules",
)
def reload_rules(request: Request) -> RulesReloadResponse:
    """Force a rules reload."""
    loader = get_state(request.app).rules
    ok = loader.reload()
    return RulesReloadResponse(ok=ok, error=loader.last_error, ruleset=loader.current().to_out())
