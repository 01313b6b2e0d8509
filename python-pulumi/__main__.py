import sessionhost.pulumi_resources.aws_session_host

sessionhost.pulumi_resources.aws_session_host.AWSSessionHost.autoload()
