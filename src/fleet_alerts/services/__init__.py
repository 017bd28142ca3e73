"""Business-logic layer (MongoDB-backed alert lifecycle).

- rules_loader.py (rule document parsing, sanitising, hot reload)
- rule_evaluator.py (escalation / auto-close decisions, advisory classifier)
- alert_store.py (alert records, compare-and-set transitions)
- event_log.py + notifier.py (append-only event log, in-process broadcast)
- alerts_service.py (lifecycle manager: create, update metadata, resolve, evaluate)
- expiry_sweeper.py (periodic age expiry and re-evaluation loop)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
