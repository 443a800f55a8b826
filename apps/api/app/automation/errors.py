from __future__ import annotations


class AutomationError(Exception):
    """Base error for deal lifecycle and rule administration failures."""

    code = "automation_error"


class DealNotFoundError(AutomationError):
    code = "deal_not_found"

    def __init__(self, deal_id: object) -> None:
        self.deal_id = deal_id
        super().__init__(f"deal not found: {deal_id}")


class LeadNotFoundError(AutomationError):
    code = "lead_not_found"

    def __init__(self, lead_id: object) -> None:
        self.lead_id = lead_id
        super().__init__(f"lead not found: {lead_id}")


class StageNotFoundError(AutomationError):
    code = "stage_not_found"

    def __init__(self, stage_id: object) -> None:
        self.stage_id = stage_id
        super().__init__(f"pipeline stage not found: {stage_id}")


class RuleNotFoundError(AutomationError):
    code = "automation_rule_not_found"

    def __init__(self, rule_id: object) -> None:
        self.rule_id = rule_id
        super().__init__(f"automation rule not found: {rule_id}")


class InvalidAssigneeError(AutomationError):
    """Raised when an assignee identifier is not a numeric user id."""

    code = "invalid_assignee"

    def __init__(self, assignee: object) -> None:
        self.assignee = assignee
        super().__init__(f"assignee must be a numeric user id, got {assignee!r}")


class AssigneeNotFoundError(AutomationError):
    code = "assignee_not_found"

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"assignee not found or inactive: {user_id}")



class InvalidRuleError(AutomationError):
    code = "invalid_automation_rule"
