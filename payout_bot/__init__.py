"""
Payout Bot - Telegram front end for a stablecoin payments platform
"""
