"""Referral code resolution, reward decisions and customer referral state."""
