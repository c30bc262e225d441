"""
Render the conversation state machine as a Mermaid diagram.

Usage:
    python scripts/generate_state_diagram.py                  # print to stdout
    python scripts/generate_state_diagram.py --update-readme  # rewrite the README section
    python scripts/generate_state_diagram.py --check          # fail when README is stale (CI)
"""
import argparse
import re
import sys
from pathlib import Path

from payout_bot.state_machine.states import CONVERSATION_TRANSITIONS, ConversationState

README_PATH = Path(__file__).resolve().parent.parent / "README.md"
START_MARKER = "<!-- STATE_DIAGRAM_START -->"
END_MARKER = "<!-- STATE_DIAGRAM_END -->"

STATE_LABELS: dict[str, str] = {
    ConversationState.IDLE.value: "Logged out",
    ConversationState.WAITING_EMAIL.value: "Email prompt",
    ConversationState.WAITING_OTP.value: "OTP prompt",
    ConversationState.AUTHENTICATED.value: "Logged in",
    ConversationState.WAITING_WITHDRAWAL_AMOUNT.value: "Withdrawal amount",
    ConversationState.WAITING_TRANSFER_EMAIL.value: "Transfer recipient",
    ConversationState.WAITING_TRANSFER_AMOUNT.value: "Transfer amount / purpose",
    ConversationState.WAITING_TRANSFER_NOTE.value: "Transfer note",
    ConversationState.BULK_TRANSFER_MENU.value: "Bulk menu",
    ConversationState.WAITING_BULK_RECIPIENT.value: "Bulk recipient",
    ConversationState.WAITING_BULK_AMOUNT.value: "Bulk amount / purpose",
    ConversationState.WAITING_BULK_CONFIRMATION.value: "Bulk review",
}


def _sanitize_id(state_value: str) -> str:
    """Mermaid ids cannot contain dots"""
    return state_value.replace(".", "_")


def generate_mermaid(
    transitions: dict[ConversationState, list[ConversationState]] = CONVERSATION_TRANSITIONS,
    labels: dict[str, str] = STATE_LABELS,
) -> str:
    lines = ["stateDiagram-v2"]

    all_states: set[str] = set()
    for source, targets in transitions.items():
        all_states.add(source.value)
        all_states.update(target.value for target in targets)

    for state_value in sorted(all_states):
        lines.append(f"    {_sanitize_id(state_value)} : {labels.get(state_value, state_value)}")

    lines.append("")
    lines.append(f"    [*] --> {_sanitize_id(ConversationState.IDLE.value)}")
    lines.append("")

    # Self loops (re-prompts) are implied and only add noise
    for source, targets in transitions.items():
        source_id = _sanitize_id(source.value)
        for target in targets:
            if target != source:
                lines.append(f"    {source_id} --> {_sanitize_id(target.value)}")

    return "\n".join(lines)


def render_section(mermaid_code: str) -> str:
    return f"{START_MARKER}\n```mermaid\n{mermaid_code}\n```\n{END_MARKER}"


def _section_pattern() -> re.Pattern:
    return re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)


def update_readme(mermaid_code: str, path: Path = README_PATH) -> None:
    content = path.read_text(encoding="utf-8")
    section = render_section(mermaid_code)
    if START_MARKER in content:
        content = _section_pattern().sub(lambda _: section, content)
    else:
        content = content.rstrip("\n") + "\n\n## State machine\n\n" + section + "\n"
    path.write_text(content, encoding="utf-8")
    print(f"Updated {path}")


def check_readme(mermaid_code: str, path: Path = README_PATH) -> bool:
    """True when the README section matches the transition table"""
    content = path.read_text(encoding="utf-8")
    match = _section_pattern().search(content)
    if not match:
        print(f"error: no state diagram markers in {path.name}")
        return False
    if match.group(0) == render_section(mermaid_code):
        print("State diagram is up to date")
        return True
    print(f"error: the state diagram in {path.name} is out of date")
    print("run: python scripts/generate_state_diagram.py --update-readme")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(description="Render the conversation state machine as Mermaid")
    parser.add_argument("--update-readme", action="store_true", help="rewrite the README section")
    parser.add_argument("--check", action="store_true", help="fail when the README section is stale")
    args = parser.parse_args()

    mermaid_code = generate_mermaid()
    if args.check:
        sys.exit(0 if check_readme(mermaid_code) else 1)
    elif args.update_readme:
        update_readme(mermaid_code)
    else:
        print(mermaid_code)


if __name__ == "__main__":
    main()
