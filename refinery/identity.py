"""
REFINERY Identity

Name, version and banner shared by the CLI and step results.
"""

__codename__ = "REFINERY"
__tagline__ = "Research. Decide. Deliver. Never flip-flop."
__version__ = "0.4.0"

BANNER = r"""
 ____  _____ _____ ___ _   _ _____ ______   __
|  _ \| ____|  ___|_ _| \ | | ____|  _ \ \ / /
| |_) |  _| | |_   | ||  \| |  _| | |_) \ V /
|  _ <| |___|  _|  | || |\  | |___|  _ < | |
|_| \_\_____|_|   |___|_| \_|_____|_| \_\|_|
"""
