# Fulfillment engine test suite
#
# Run with: python -m pytest
