#!/usr/bin/env python3
"""Housekeeper runner"""
from housekeeper.cli import main

if __name__ == '__main__':
    main()
