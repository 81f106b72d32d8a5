"""Taskloom CLI commands."""

from taskloom.commands.agents import agents, dead_agents, heartbeat, kill, spawn
from taskloom.commands.init import init
from taskloom.commands.query import check, list_tasks, ready, show
from taskloom.commands.service import service
from taskloom.commands.tasks import abandon, add, claim, done, fail, link, loop, retry, unclaim

__all__ = [
    "abandon",
    "add",
    "agents",
    "check",
    "claim",
    "dead_agents",
    "done",
    "fail",
    "heartbeat",
    "init",
    "kill",
    "link",
    "list_tasks",
    "loop",
    "ready",
    "retry",
    "service",
    "show",
    "spawn",
    "unclaim",
]
