"""Package entry point for ``python -m soundtracker``.

WHY: Operators start the bot with ``python -m soundtracker``; the
process runs until it is terminated.

HOW: Delegates to the Slack bot's main(), which owns logging setup,
configuration loading and the Socket Mode connection.
"""

from soundtracker.slack.bot import main

if __name__ == "__main__":
    main()
