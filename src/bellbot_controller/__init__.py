"""Bellbot controller: MQTT bell device communication and timetable provisioning."""

__version__ = "0.1.0"
