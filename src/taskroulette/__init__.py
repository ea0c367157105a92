"""
TaskRoulette: a personal task DAG that follows you across devices.

Tasks live in a local SQLite graph. Every change is journaled to an
outbox in the same transaction, pushed to the cloud when you're online,
and reconciled back from other devices on a timer.
"""

import os

__version__ = "0.1.0"
__author__ = "TaskRoulette"

TASKROULETTE_HOME = os.environ.get("TASKROULETTE_HOME", "~/.taskroulette")
