"""Entry point for running ai-sessions as a module.

Usage:
    python -m ai_sessions list
"""

from ai_sessions.cli import main

if __name__ == "__main__":
    main()
