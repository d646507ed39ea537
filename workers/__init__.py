"""Background workers that keep passive deadlines and delivery feeds moving."""
from .expiry_sweeper import ExpirySweeper
from .tracking_feed import TrackingFeedConsumer

__all__ = ['ExpirySweeper', 'TrackingFeedConsumer']
