"""
blunder Web GUI
"""
