"""
HELMSMAN identity constants.
"""

__version__ = "0.4.0"
__codename__ = "HELMSMAN"
__tagline__ = "Hold the course through every compaction."

BANNER = r"""
  _   _ _____ _     __  __ ____  __  __    _    _   _
 | | | | ____| |   |  \/  / ___||  \/  |  / \  | \ | |
 | |_| |  _| | |   | |\/| \___ \| |\/| | / _ \ |  \| |
 |  _  | |___| |___| |  | |___) | |  | |/ ___ \| |\  |
 |_| |_|_____|_____|_|  |_|____/|_|  |_/_/   \_\_| \_|
"""
