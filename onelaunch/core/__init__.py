"""Clearing and settlement core"""
