"""
Deployment Artifact Model
Opaque reference (image tag, bundle path) handed from the stage that
produced it to the stages that publish and deploy it. ``owner`` names the
stage currently holding it.
"""
from pydantic import BaseModel


class DeploymentArtifact(BaseModel):
    reference: str
    produced_by: str
    owner: str

    def handed_to(self, stage: str, reference: str = "") -> "DeploymentArtifact":
        """Return a copy owned by ``stage``, optionally with a new reference."""
        return self.model_copy(update={"owner": stage, "reference": reference or self.reference})
