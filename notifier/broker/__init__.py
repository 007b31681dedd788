"""Broker clients: partitioned, ordered-per-key logs with per-group offsets."""

from notifier.broker.contract import BrokerClient, BrokerMessage, SendAck
from notifier.broker.journal import SqliteBroker
from notifier.broker.memory import InMemoryBroker

__all__ = ["BrokerClient", "BrokerMessage", "InMemoryBroker", "SendAck", "SqliteBroker"]
