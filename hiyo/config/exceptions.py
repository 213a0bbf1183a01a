# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Errors raised while turning hiyo.yaml into a HiyoConfig.

These sit outside hiyo.serving so `hiyo chat` can map a bad file to
CONFIG_ERROR before torch or the model loader is ever imported.
"""


class ConfigError(Exception):
    """Something is wrong with the hiyo config file."""


class ConfigLoadError(ConfigError):
    """The file is missing, unreadable, or not a YAML mapping."""


class ConfigValidationError(ConfigError):
    """
    The YAML parsed, but HiyoConfig rejected it.

    The message carries pydantic's report, e.g. a governor limit out of
    range or a misspelled runtime key.
    """
