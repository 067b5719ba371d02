#!/usr/bin/env python3
"""relaychat - Unified entry point.

Automatically detects mode:
- No arguments → Interactive TUI chat
- With arguments → Headless CLI mode
- status → Show relay status (for client discovery)
"""

import sys
import json


def main():
    """Main entry point."""
    args = sys.argv[1:]

    # Handle 'status' command - for relay discovery
    if args and args[0] == "status":
        from .runtime import get_status
        status = get_status()
        print(json.dumps(status, indent=2))
        sys.exit(0 if status.get("running") else 1)

    # Flags that should still launch TUI mode (not CLI mode)
    tui_only_flags = {'-v', '--verbose'}
    verbose = '-v' in args or '--verbose' in args

    has_cli_args = bool([a for a in args if a not in tui_only_flags])

    if has_cli_args:
        # Headless CLI mode
        from .cli import main as cli_main
        cli_main()
    else:
        # Interactive TUI chat
        from .tui import ChatApp
        app = ChatApp(verbose=verbose)
        app.run()


if __name__ == "__main__":
    main()
