"""Tavern Tales: an AI-narrated adventure engine.

A turn sends the player's action to a narrative service, streams the reply
to the player as it arrives, interprets the structured payload into game
state transitions, and fans out voice, scene art and legend recording in
the background.
"""
