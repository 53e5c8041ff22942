"""French address parsing and candidate generation modules"""
