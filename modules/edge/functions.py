"""
Edge Module Functions
ACM certificate with DNS validation and Route 53 alias to the ALB
"""

import pulumi
import pulumi_aws as aws
from typing import Dict, Optional


def create_certificate(domain: str, hosted_zone_id: str, tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Request an ACM certificate and validate it through Route 53

    Args:
        domain: Domain name on the certificate
        hosted_zone_id: Route 53 hosted zone for the validation record
        tags: Additional tags

    Returns:
        Dict with certificate resources and validated ARN
    """
    certificate = aws.acm.Certificate(
        "otel-demo-certificate",
        domain_name=domain,
        validation_method="DNS",
        tags={**(tags or {}), "Name": domain}
    )

    option = certificate.domain_validation_options[0]
    validation_record = aws.route53.Record(
        "otel-demo-certificate-validation",
        zone_id=hosted_zone_id,
        name=option.resource_record_name,
        type=option.resource_record_type,
        records=[option.resource_record_value],
        ttl=300,
        allow_overwrite=True
    )

    # Blocks until ACM reports ISSUED
    validation = aws.acm.CertificateValidation(
        "otel-demo-certificate-issued",
        certificate_arn=certificate.arn,
        validation_record_fqdns=[validation_record.fqdn]
    )

    return {
        "certificate": certificate,
        "validation_record": validation_record,
        "validation": validation,
        "certificate_arn": validation.certificate_arn
    }


def create_alias_record(domain: str, hosted_zone_id: str, alb_hostname: str) -> aws.route53.Record:
    """
    Point the domain at the ALB with an alias A record

    Args:
        domain: Record name
        hosted_zone_id: Route 53 hosted zone
        alb_hostname: DNS name of the ALB created for the ingress

    Returns:
        Route 53 Record resource
    """
    alb_zone = aws.elb.get_hosted_zone_id(load_balancer_type="application")
    return aws.route53.Record(
        "otel-demo-alias",
        zone_id=hosted_zone_id,
        name=domain,
        type="A",
        aliases=[aws.route53.RecordAliasArgs(
            name=alb_hostname,
            zone_id=alb_zone.id,
            evaluate_target_health=True
        )],
        allow_overwrite=True
    )


def create_edge_resources(domain: str,
                          hosted_zone_id: str,
                          alb_hostname: Optional[str] = None,
                          tags: Dict[str, str] = None) -> Dict[str, any]:
    """
    Create TLS and DNS resources for the public endpoint

    Args:
        domain: Public domain name
        hosted_zone_id: Route 53 hosted zone
        alb_hostname: ALB DNS name; the alias is created once it is known
        tags: Additional tags

    Returns:
        Dict with certificate ARN, URL and resources
    """
    certificate = create_certificate(domain, hosted_zone_id, tags)

    alias = None
    if alb_hostname:
        alias = create_alias_record(domain, hosted_zone_id, alb_hostname)
    else:
        pulumi.log.info("ALB hostname not known yet, skipping alias record")

    return {
        "certificate_arn": certificate["certificate_arn"],
        "url": f"https://{domain}",
        "alias_created": alias is not None,
        "alb_hostname": alb_hostname,
        # Keep references to resources for dependencies
        "_certificate": certificate["certificate"],
        "_validation": certificate["validation"],
        "_alias": alias
    }
