# matrixci_pipeline.py
# Build matrix for the library: build and test on every platform, then a
# gated release (configure once, deploy every platform, publish).
from matrixci import FailureConditions, Platform, Project, contains, no_less_than, vcs
from matrixci.agents import MEMORY_MB, OS_NAME

VERSION_PARAMETER = "releaseVersion"
PUBLISH_VERSION = "0.1.0"
BINTRAY_USER = "orangy"
BINTRAY_KEY = "credentialsJSON:9a48193c-d16d-46c7-8751-2fb434b09e07"

PLATFORMS = [Platform.WINDOWS, Platform.LINUX, Platform.MACOS]

PUBLISH_PARAMS = (
    f"-P{VERSION_PARAMETER}=%{VERSION_PARAMETER}% "
    "-PbintrayApiKey=%bintray-key% -PbintrayUser=%bintray-user%"
)


def gradle(platform: Platform | None, tasks: str, params: str = "") -> str:
    wrapper = "gradlew.bat" if platform is Platform.WINDOWS else "./gradlew"
    return " ".join(part for part in (wrapper, params, tasks) if part)


def common(job):
    job.require(no_less_than(MEMORY_MB, 6144))


def pipeline():
    project = Project(
        "matrixci",
        settings_version="2018.2",
        conditions=FailureConditions(
            nonzero_exit_code=True,
            error_message=True,
            execution_timeout_min=120,
        ),
        common=common,
    )

    build_all = (
        project.job("Build_All", "Build (All)")
        .composite()
        .trigger(vcs("-:*.md", "-:.gitignore"))
    )

    builds = []
    for p in PLATFORMS:
        build = (
            project.platform_job(p, "Build")
            # --continue runs the tests of every platform even if one fails
            .define_step(f"Build and Test {p.value} Binaries", gradle(p, "clean publishToBuildLocal check --continue"))
            .with_artifacts("+:build/maven=>maven")
        )
        build_all.depends_on(build)
        build_all.depends_on_artifacts(build, "+:maven=>maven")
        builds.append(build)

    configure = (
        project.job("Deploy_Configure", "Deploy (Configure)")
        .build_number(f"{PUBLISH_VERSION}-dev-%build.counter%")
        .param("bintray-user", BINTRAY_USER)
        .password("bintray-key", BINTRAY_KEY)
        .param(VERSION_PARAMETER, "%build.number%")
        .require(contains(OS_NAME, Platform.LINUX.value))
        .define_step(
            "Verify Gradle Configuration",
            gradle(None, "clean publishBintrayCreateVersion", PUBLISH_PARAMS),
        )
    )

    deploys = []
    for p in PLATFORMS:
        deploy = (
            project.platform_job(p, "Deploy")
            .deployment(max_running=1)
            .clean_checkout()
            .build_number(f"%{VERSION_PARAMETER}% (%build.counter%)")
            .param(VERSION_PARAMETER, "%dep.Deploy_Configure.build.number%")
            .param("bintray-user", BINTRAY_USER)
            .password("bintray-key", BINTRAY_KEY)
            .define_step(f"Deploy {p.value} Binaries", gradle(p, "clean build publish", PUBLISH_PARAMS))
            .depends_on_snapshot(configure)
        )
        deploys.append(deploy)

    publish = (
        project.job("Deploy_Publish", "Deploy (Publish)")
        .composite()
        .build_number(f"%{VERSION_PARAMETER}% (%build.counter%)")
        .param(VERSION_PARAMETER, "%dep.Deploy_Configure.build.number%")
        .depends_on_snapshot(configure)
    )
    for d in deploys:
        publish.depends_on_snapshot(d)

    project.order(build_all, *builds, publish, configure, *deploys)
    project.release(
        configure=configure,
        deploys=deploys,
        publish=publish,
        version_parameter=VERSION_PARAMETER,
    )
    return project
