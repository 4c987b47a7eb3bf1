# -*- coding: utf-8 -*-
"""
PSLoader client core

Device-trust authentication and local cache synchronization for the
hotel financial-data loader.
"""

__version__ = "1.0.0"
