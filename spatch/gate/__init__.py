"""
Gateway settings

Config:
  SPATCH_CONFIG = /etc/spatch/spatch.conf
"""
