"""Match domain services: rules, turn clock, settlement and listings.

Routes and socket handlers import from here so transport concerns stay
separate from how a match is played and paid out.
"""
