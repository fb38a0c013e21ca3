"""Built-in ``switch_mode`` tool: lets the model change the approval mode."""

from __future__ import annotations

from knack.util import CLIError

from toolexec.approval import ApprovalMode, ApprovalPolicy
from toolexec.tools.base import LocalHandler, ToolEntry, ValidationResult


def create_switch_mode_tool(policy: ApprovalPolicy) -> ToolEntry:
    def _switch(arguments: dict, token=None) -> str:
        new_mode = ApprovalMode.parse(arguments["mode"])
        old_mode = policy.set_mode(new_mode)
        if old_mode == new_mode:
            return f"Already in {new_mode.value} mode"
        return f"Switched approval mode from {old_mode.value} to {new_mode.value}"

    def _validate(arguments: dict) -> ValidationResult:
        try:
            ApprovalMode.parse(arguments.get("mode", ""))
        except CLIError as exc:
            return ValidationResult.fail(str(exc))
        return ValidationResult.ok()

    return ToolEntry(
        name="switch_mode",
        handler=LocalHandler(_switch),
        description=(
            "Switch the approval mode: 'normal' asks before changes, "
            "'auto-accept' runs everything, 'plan' asks before any change."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "mode": {"type": "string", "enum": [m.value for m in ApprovalMode]},
            },
            "required": ["mode"],
        },
        # Leaving plan mode is itself a change the user must confirm.
        needs_approval=lambda arguments, mode: mode is ApprovalMode.PLAN,
        validator=_validate,
        read_only=False,
    )
