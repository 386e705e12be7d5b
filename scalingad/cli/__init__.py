"""ScalingAd command-line interface."""
