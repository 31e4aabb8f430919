"""Slack integration for the soundtrack bot.

WHY: Users trigger the bot from Slack by mentioning it on a message with
an image or video, or by reacting with the trigger emoji. This package
turns those events into pipeline requests and posts the results back.

HOW: The bot runs with slack-bolt's async Socket Mode adapter.
messages.py filters events and builds reply texts, gateway.py talks to
the Web API, bot.py registers handlers and runs the process.

RULES:
- Socket Mode requires SLACK_BOT_TOKEN and SLACK_APP_TOKEN
- Replies go into the thread of the triggering message
"""
