"""HTTP API for the Call Router"""
