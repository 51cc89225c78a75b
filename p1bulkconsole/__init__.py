# PingOne Bulk Console
# Last Update: October 19, 2026

version = "0.3"
