"""
DigitalSE — a Snowflake solutions engineer agent.

Routes a user's question or statement to a plan of Snowflake tool calls,
holds anything that changes data until the user confirms it, runs the plan
under a per-turn time/token budget and composes one evidence-labelled
answer.
"""

__version__ = "0.3.0"
