"""
speedbot: Twitch speedrun stream shoutouts and speedrun.com run announcements for Discord.
"""

__version__ = "1.0.0"
