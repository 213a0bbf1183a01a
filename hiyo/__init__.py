# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Hiyo: a local chat generation engine.

Everything runs on the machine the user is sitting at. The engine loads one
model at a time, admits requests through a resource governor, and streams
generated text back token by token. UI and storage live elsewhere.
"""

__version__ = "0.1.0"
