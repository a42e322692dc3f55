"""Generation queue: single-worker processing of image and video jobs."""

PLUGIN_METADATA = {
    "name": "queue",
    "version": "1.0.0",
    "description": "Queues generation requests and runs them one at a time on Replicate.",
}
