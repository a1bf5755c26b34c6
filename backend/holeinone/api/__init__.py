# Hole-in-One Engine API
