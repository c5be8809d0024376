"""
Test Suite for Reddit Pulse

Test Organization:
- test_config.py: Environment configuration and validation
- test_taxonomy.py: Theme and search term seeding
- test_storage.py: Upserts, comment tree persistence, pending selection
- test_reddit_client.py: Media extraction, thread materialization, source errors
- test_collector.py: Collection stage with a mocked source
- test_ai_client.py: OpenAI client wrapper and cost tracking
- test_ai_prompts.py: Prompt templates
- test_ai_parsing.py: Response parsing and mention normalization
- test_ai_batch.py: Analysis stage retries, batching and commits
- test_ai_extended.py: Extended and product-review passes
- test_aggregation.py: Aggregate metrics
- test_pipeline.py: Stage ordering, failure policy, CLI exit codes
- test_api.py: Cron triggers and metric endpoints
- backend/utils/: Error handling and logging utilities

Run all tests:
    python -m pytest tests/ -v

Run specific test file:
    python -m pytest tests/test_storage.py -v
"""
