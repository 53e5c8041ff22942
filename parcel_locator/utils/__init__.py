"""Shared utilities: HTTP session, caching and resilience"""
