"""CSS theme for the relaychat TUI using Dracula colors."""

# Dracula color palette
PINK = "#FF79C6"
PURPLE = "#BD93F9"
CYAN = "#8BE9FD"
GREEN = "#50FA7B"
YELLOW = "#F1FA8C"
RED = "#FF5555"
FG = "#F8F8F2"
FG_DIM = "#6272A4"
BG = "#282A36"
BG_DARK = "#1E1F29"

# Header rule fades from cyan to pink
RULE_COLORS = [CYAN, "#B8C8F1", "#D6B2E9", PINK]


def rule_color(position: float) -> str:
    """Pick a rule color for a position between 0.0 and 1.0."""
    position = min(max(position, 0.0), 1.0)
    return RULE_COLORS[min(int(position * len(RULE_COLORS)), len(RULE_COLORS) - 1)]


# CSS for the entire application
RELAYCHAT_CSS = f"""
MainScreen {{
    background: {BG};
}}

/* Input styling */
Input {{
    background: {BG_DARK};
    border: solid {FG_DIM};
    padding: 0 1;
}}

Input:focus {{
    border: solid {PURPLE};
}}

/* Footer */
Footer {{
    background: {BG_DARK};
    color: {FG_DIM};
    height: 1;
}}

Footer .footer--key {{
    color: {CYAN};
}}
"""
