"""Patch versionCode / versionName / package in APK and AAB manifests."""

__version__ = "1.0.0"
