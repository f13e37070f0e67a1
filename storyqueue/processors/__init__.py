"""Built-in task processors."""

from storyqueue.processors.story_generation import (
    StoryGenerationProcessor,
    StoryGenerator,
    StoryRepository,
)

__all__ = ["StoryGenerationProcessor", "StoryGenerator", "StoryRepository"]
