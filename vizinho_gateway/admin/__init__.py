"""Vizinho Virtual Gateway - Admin API"""
