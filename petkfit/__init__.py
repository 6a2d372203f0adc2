"""
PET kinetic fitting of the dual-input liver model.
"""
