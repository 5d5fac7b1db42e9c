"""Main entry point.

Typically invoked as "python3 -m irccd" or "/usr/bin/irccd".
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from . import run

run()
