# /// script
# dependencies = ["diagrams"]
# ///
from diagrams import Cluster, Diagram
from diagrams.aws.compute import Lambda
from diagrams.aws.database import Dynamodb
from diagrams.aws.general import Client
from diagrams.aws.integration import Appsync
from diagrams.aws.ml import Bedrock
from diagrams.aws.security import Cognito, Shield

with Diagram(
    "Guarded Conversation Architecture",
    show=False,
    filename="assets/conversation_relay",
    direction="LR",  # Left-to-right flow
):
    frontend = Client("Web Frontend")
    cognito = Cognito("Cognito\nUser Pool")

    with Cluster("Conversation API"):
        appsync = Appsync("AppSync\nGraphQL API")
        dynamodb = Dynamodb("Messages")

    with Cluster("Turn Relay"):
        handler = Lambda("Conversation\nHandler")
        bedrock = Bedrock("Bedrock\nConverseStream")
        guardrail = Shield("Bedrock\nGuardrail")

    frontend >> cognito
    frontend >> appsync >> dynamodb
    appsync >> handler >> bedrock >> guardrail
    handler >> appsync
