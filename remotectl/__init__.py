# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""remotectl - Reverse tunnels, terminals and file access for private machines."""

__version__ = "0.1.0"
