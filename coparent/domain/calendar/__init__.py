"""Calendar domain - Events, custody schedules and pattern expansion"""
