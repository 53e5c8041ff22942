"""Core pipeline, data types and service application"""
