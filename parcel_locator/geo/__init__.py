"""Cadastral registry, zone enumeration and satellite analysis modules"""
