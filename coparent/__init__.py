"""Co-parent shared calendar with two-way external calendar sync"""
