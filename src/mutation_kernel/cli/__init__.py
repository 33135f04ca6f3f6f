"""Operator command-line interface"""
