from copilot_override.transform.pipelines import RequestTransformer, RewriteRule

__all__ = ["RequestTransformer", "RewriteRule"]
