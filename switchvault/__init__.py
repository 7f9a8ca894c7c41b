"""SwitchVault - distributed kill-switch coordination service."""

from .version import __version__
