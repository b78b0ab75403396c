__codename__ = "CONDUCTOR"
__version__ = "0.1.0"
__tagline__ = "Plans in, finished tasks out."

BANNER = r"""
   ___ ___  _  _ ___  _   _  ___ _____ ___  ___
  / __/ _ \| \| |   \| | | |/ __|_   _/ _ \| _ \
 | (_| (_) | .` | |) | |_| | (__  | || (_) |   /
  \___\___/|_|\_|___/ \___/ \___| |_| \___/|_|_\
"""
