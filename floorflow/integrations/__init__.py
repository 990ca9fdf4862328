"""floorflow.integrations: collaborator gateway modules.

All outbound HTTP calls to the Generator, the rejection analysis service and
the prompt improver go through ``generation_gateway``, never via bare
`requests` calls in services or blueprints.
"""
