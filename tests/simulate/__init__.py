"""Visitor presets for Veilgate tests.

Browser environments and request headers for the kinds of visitors the
service has to tell apart: a person in a desktop browser, a headless
Puppeteer run, a Selenium-driven browser and plain HTTP clients.
"""
